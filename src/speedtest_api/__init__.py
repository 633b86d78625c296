"""
Speed test results API.

Modules:
- db: PostgreSQL connection pooling + query helpers
- results: read queries over the results table and their JSON transforms
- schemas: Pydantic models for the REST API
- main: FastAPI application, routes and entry point
"""
