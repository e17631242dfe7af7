"""
Test suite for the fulfillment core.

Test categories:
- Unit tests: auth, event bus, gateway client (mocked transport)
- Service tests: cart, checkout, payments, deliveries on in-memory SQLite
- Concurrency tests: racing sessions on a file-backed SQLite database
- API tests: full FastAPI app through an ASGI client
"""
