"""
FastAPI routers exposing the import service over HTTP.
"""
