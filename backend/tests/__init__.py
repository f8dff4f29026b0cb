"""
pytest test suite for the ExamVault backend.

Test categories:
- unit: service layer and gateways with fakes / mock transports
- api: full FastAPI app over ASGI with in-memory SQLite
- integration: concurrent sessions against a file-backed SQLite database
"""
