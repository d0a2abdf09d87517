"""
FastAPI routers for the import pipeline, one module per resource.
"""
