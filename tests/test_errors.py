from fastapi.testclient import TestClient
from pydantic import BaseModel

from reconciler.core.exceptions import LockTimeout, ResourceNotFoundError
from reconciler.main import app

client = TestClient(app)


def test_404_not_found():
    response = client.get("/non-existent-route")
    assert response.status_code == 404
    data = response.json()
    assert "error" in data
    assert "code" in data
    assert data["code"] == "HTTP_ERROR"


def test_validation_error_structure():
    # We can define a temporary route to test validation
    class Item(BaseModel):
        name: str
        price: int

    @app.post("/test-validation")
    def create_item(item: Item):
        return item

    response = client.post("/test-validation", json={"name": "foo", "price": "invalid"})
    assert response.status_code == 422
    data = response.json()
    assert data["code"] == "VALIDATION_ERROR"
    assert "details" in data
    assert len(data["details"]) > 0


def test_custom_exception():
    @app.get("/test-custom-error")
    def trigger_custom_error():
        raise ResourceNotFoundError(message="Item not found")

    response = client.get("/test-custom-error")
    assert response.status_code == 404
    data = response.json()
    assert data["code"] == "NOT_FOUND"
    assert data["error"] == "Item not found"


def test_retryable_exception_asks_for_redelivery():
    @app.get("/test-retryable-error")
    def trigger_retryable_error():
        raise LockTimeout(details={"key": "44885683"})

    response = client.get("/test-retryable-error")
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["code"] == "LOCK_TIMEOUT"


def test_service_not_initialized():
    # No lifespan ran for this client, so there is no service on app.state
    response = client.get("/api/v1/users/44885683/subscription-status")
    assert response.status_code == 503
    assert response.json()["code"] == "TRANSIENT_STORAGE_FAILURE"
