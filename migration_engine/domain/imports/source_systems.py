"""
Known source-system signatures.

Each signature lists the column names a system's standard export carries and
the value dictionaries used to normalize its categorical fields. Detection is
a loose fingerprint match: Jaccard similarity of normalized column-name sets.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from migration_engine.core.config import settings

logger = logging.getLogger(__name__)

CUSTOM_SOURCE = "custom"


def normalize_column_name(name: str) -> str:
    """Normalize column name: lowercase, alphanumeric only."""
    if not name:
        return ""
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


def calculate_jaccard_similarity(set1: set, set2: set) -> float:
    """Calculate Jaccard similarity between two sets."""
    if not set1 and not set2:
        return 1.0
    if not set1 or not set2:
        return 0.0

    intersection = len(set1.intersection(set2))
    union = len(set1.union(set2))

    return intersection / union if union > 0 else 0.0


@dataclass(frozen=True)
class SourceSignature:
    name: str
    display_name: str
    columns: Tuple[str, ...]
    value_maps: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def normalized_columns(self) -> set:
        return {normalize_column_name(c) for c in self.columns if normalize_column_name(c)}


_SHARED_CATEGORY_MAP = {
    "Harassment": "Harassment",
    "Sexual Harassment": "Harassment",
    "Discrimination": "Discrimination",
    "Fraud": "Fraud",
    "Theft": "Theft",
    "Conflict of Interest": "Conflict of Interest",
    "COI": "Conflict of Interest",
    "Retaliation": "Retaliation",
    "Substance Abuse": "Substance Abuse",
    "Workplace Violence": "Workplace Violence",
    "Workplace Safety": "Safety Concern",
    "Bullying": "Bullying",
    "Corruption": "Corruption",
    "Bribery": "Bribery",
}

NAVEX = SourceSignature(
    name="navex",
    display_name="NAVEX EthicsPoint",
    columns=(
        "Case Number", "Case ID", "Case Type", "Incident Type", "Issue Type", "Case Status", "Status",
        "Date Reported", "Date Created", "Date Closed", "Incident Date", "Reporter Type", "Anonymous",
        "Location", "Facility", "Site", "Department", "Business Unit", "Description", "Narrative",
        "Summary", "Resolution", "Outcome", "Assigned To", "Investigator", "Priority", "Severity",
        "Category", "Subcategory", "Country", "State", "City", "Subject Name", "Accused Name",
        "Reporter Name", "Reporter Email", "Employee ID",
    ),
    value_maps={
        "category": {
            **_SHARED_CATEGORY_MAP,
            "Racial Discrimination": "Discrimination",
            "Age Discrimination": "Discrimination",
            "Gender Discrimination": "Discrimination",
            "Financial Fraud": "Fraud",
            "Ethics Violation": "Ethics Violation",
            "Code of Conduct": "Ethics Violation",
            "Safety": "Safety Concern",
            "Safety Concern": "Safety Concern",
            "Drug/Alcohol": "Substance Abuse",
            "Violence": "Workplace Violence",
            "Hostile Work Environment": "Hostile Work Environment",
            "FCPA Violation": "Bribery",
            "Privacy Violation": "Privacy Violation",
            "Data Breach": "Privacy Violation",
            "Regulatory Violation": "Regulatory Violation",
            "Compliance": "Regulatory Violation",
            "Other": "Other",
            "Unknown": "Other",
            "General": "Other",
        },
        "status": {
            "Open": "OPEN",
            "New": "NEW",
            "Received": "NEW",
            "In Progress": "IN_PROGRESS",
            "Active": "IN_PROGRESS",
            "Investigating": "IN_PROGRESS",
            "Under Investigation": "IN_PROGRESS",
            "Pending": "PENDING",
            "Pending Response": "PENDING_RESPONSE",
            "Awaiting Response": "PENDING_RESPONSE",
            "Awaiting Information": "PENDING_RESPONSE",
            "Closed": "CLOSED",
            "Resolved": "CLOSED",
            "Complete": "CLOSED",
            "Completed": "CLOSED",
            "Dismissed": "DISMISSED",
            "No Action Required": "DISMISSED",
        },
        "severity": {
            "High": "HIGH",
            "Critical": "HIGH",
            "Urgent": "HIGH",
            "3": "HIGH",
            "Medium": "MEDIUM",
            "Moderate": "MEDIUM",
            "Normal": "MEDIUM",
            "2": "MEDIUM",
            "Low": "LOW",
            "Minor": "LOW",
            "1": "LOW",
        },
    },
)

EQS = SourceSignature(
    name="eqs",
    display_name="EQS Integrity Line",
    columns=(
        "Report ID", "Report Number", "Ref Number", "Reference Number", "Report Type", "Issue Category",
        "Category Name", "Status", "Status Name", "Created Date", "Report Date", "Received Date",
        "Closed Date", "Resolution Date", "Reporter Type", "Anonymous Report", "Is Anonymous", "Location",
        "Site Name", "Division", "Region", "Country", "Case Description", "Report Text", "Description",
        "Summary", "Investigation Status", "Investigation Outcome", "Outcome", "Resolution",
        "Assigned User", "Assignee", "Handler", "Severity", "Risk Level", "Subject Name",
        "Subject Employee ID", "Whistleblower ID",
    ),
    value_maps={
        "category": {
            **_SHARED_CATEGORY_MAP,
            "Financial Misconduct": "Fraud",
            "Embezzlement": "Theft",
            "Ethics Concern": "Ethics Violation",
            "Code Violation": "Ethics Violation",
            "Policy Violation": "Ethics Violation",
            "Health & Safety": "Safety Concern",
            "Safety Issue": "Safety Concern",
            "Violence/Threats": "Workplace Violence",
            "Anti-Bribery": "Bribery",
            "Data Protection": "Privacy Violation",
            "Privacy Breach": "Privacy Violation",
        },
        "status": {
            "New": "NEW",
            "Received": "NEW",
            "Submitted": "NEW",
            "Open": "OPEN",
            "In Progress": "IN_PROGRESS",
            "Processing": "IN_PROGRESS",
            "Under Review": "IN_PROGRESS",
            "Investigating": "IN_PROGRESS",
            "On Hold": "PENDING",
            "Waiting": "PENDING",
            "Pending Information": "PENDING_RESPONSE",
            "Awaiting Response": "PENDING_RESPONSE",
            "Completed": "CLOSED",
            "Closed": "CLOSED",
            "Resolved": "CLOSED",
        },
        "severity": {
            "High": "HIGH",
            "Critical": "HIGH",
            "Severe": "HIGH",
            "Level 3": "HIGH",
            "3": "HIGH",
            "Medium": "MEDIUM",
            "Moderate": "MEDIUM",
            "Standard": "MEDIUM",
            "Level 2": "MEDIUM",
            "2": "MEDIUM",
            "Low": "LOW",
            "Minor": "LOW",
            "Minimal": "LOW",
            "Level 1": "LOW",
            "1": "LOW",
        },
    },
)

ETHICO = SourceSignature(
    name="ethico",
    display_name="Legacy Ethico",
    columns=(
        "case_num", "riu_num", "case_type", "narrative", "call_details", "intake_date", "case_status",
        "investigator", "site_code", "caller_type", "anonymous_flag", "priority",
    ),
    value_maps={
        "status": {
            "Open": "OPEN",
            "New": "NEW",
            "Assigned": "IN_PROGRESS",
            "Closed": "CLOSED",
        },
    },
)

SOURCE_SIGNATURES: Dict[str, SourceSignature] = {sig.name: sig for sig in (NAVEX, EQS, ETHICO)}


def detect_source_system(
    columns: Iterable[str],
    threshold: Optional[float] = None,
) -> Tuple[str, float]:
    """
    Guess which known system produced an export from its header row.

    Returns:
        ``(source_system, confidence)``; ``("custom", best_score)`` when no
        signature reaches the threshold
    """
    threshold = settings.source_detection_threshold if threshold is None else threshold
    observed = {normalize_column_name(c) for c in columns if normalize_column_name(c)}

    best_name, best_score = CUSTOM_SOURCE, 0.0
    for signature in SOURCE_SIGNATURES.values():
        score = calculate_jaccard_similarity(observed, signature.normalized_columns)
        logger.debug(f"Source signature '{signature.name}' similarity={score:.3f}")
        if score > best_score:
            best_name, best_score = signature.name, score

    if best_score < threshold:
        logger.info(f"No source signature matched (best={best_name}, {best_score:.2f}); treating as custom")
        return CUSTOM_SOURCE, round(best_score, 4)
    logger.info(f"Detected source system '{best_name}' (similarity={best_score:.2f})")
    return best_name, round(best_score, 4)


def value_dictionary_for(source_system: str, target_field: str) -> Dict[str, str]:
    """
    Known value dictionary of a source system for a target field.

    A dictionary applies when its kind (``status``, ``severity``, ...) appears
    in the target field name.
    """
    signature = SOURCE_SIGNATURES.get((source_system or "").lower())
    if signature is None:
        return {}
    normalized_field = normalize_column_name(target_field)
    for kind, dictionary in signature.value_maps.items():
        if kind in normalized_field:
            return dictionary
    if "priority" in normalized_field and "severity" in signature.value_maps:
        return signature.value_maps["severity"]
    return {}
