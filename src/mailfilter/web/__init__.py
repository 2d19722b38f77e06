"""HTTP control surface (FastAPI)."""
