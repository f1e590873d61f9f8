"""FastAPI dependencies shared across endpoints."""
