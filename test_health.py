"""
Tests for health, metrics and cross-cutting HTTP behaviour.

Tests cover:
- GET /health report and failure (500)
- GET /health/live
- GET /metrics counters
- X-Request-ID header and CORS
"""

from violet_api import main
from violet_api.errors import StoreError


class TestHealth:
    """Test GET /health."""

    def test_health_reports_schema(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["database"] == "connected"
        assert data["tablas"] == {"messages": True, "carousel_images": True}
        assert data["total_mensajes"] == 0
        assert data["total_imagenes"] == 0
        assert "encoded_image" in data["columnas_carrusel"]
        assert "timestamp" in data

    def test_health_counts_rows(self, client, png_data_url):
        client.post("/api/guardar", json={"texto": "hola", "hcaptcha": "t"})
        client.post("/api/carrusel", json={"nombre": "uno", "imagen_base64": png_data_url})

        data = client.get("/health").json()

        assert data["total_mensajes"] == 1
        assert data["total_imagenes"] == 1

    def test_health_database_failure(self, client, monkeypatch):
        def unreachable(db):
            raise StoreError("could not connect to server")

        monkeypatch.setattr(main, "describe_database", unreachable)

        response = client.get("/health")

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "could not connect to server"}

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestMetrics:
    """Test GET /metrics."""

    def test_upload_and_request_metrics_exposed(self, client, png_data_url):
        client.post("/api/carrusel", json={"nombre": "uno", "imagen_base64": png_data_url})
        client.post("/api/carrusel", json={"nombre": "mala", "imagen_base64": "nope"})

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert 'carousel_uploads_total{result="created"}' in body
        assert 'carousel_uploads_total{result="validation_error"}' in body
        assert "http_requests_total" in body
        assert "schema_repairs_total" in body


class TestCrossCutting:
    """Test request id header and CORS configuration."""

    def test_request_id_header(self, client):
        response = client.get("/api/mensajes")

        assert "x-request-id" in response.headers

    def test_cors_allowed_origin(self, client):
        response = client.options(
            "/api/guardar",
            headers={
                "Origin": "https://czalbert6.github.io",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://czalbert6.github.io"

    def test_cors_unknown_origin(self, client):
        response = client.options(
            "/api/guardar",
            headers={
                "Origin": "https://evil.example",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert "access-control-allow-origin" not in response.headers
