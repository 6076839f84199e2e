"""
pytest suite for the BookScape backend.

Test categories:
- Unit tests: services against an in-memory SQLite session, gateway faked
- API tests: the FastAPI app through httpx with dependencies overridden
- Concurrency: stock validation racing on a file-backed SQLite database
"""
