import pytest
from datetime import date
from fastapi.testclient import TestClient

from image_resize.config import Settings
from image_resize.main import create_app
from image_resize.api.config import average_image_size, readable_size, usage_percent

SRC = "https://cdn.example.com/photo.png"


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


class TestResizeEndpoint:

    def test_resize(self, client):
        response = client.get("/resize", params={"src": SRC, "w": "100"})
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/webp"
        assert response.headers["x-cache"] == "MISS"
        assert response.headers["cache-control"] == "public, max-age=86400"

    @pytest.mark.parametrize("path", ["/r/", "/r/anything/goes.png"])
    def test_short_aliases(self, client, path):
        response = client.get(path, params={"src": SRC, "c": "50"})
        assert response.status_code == 200
        assert response.headers["x-info"] == "fresh-fetch; params=c_50x50; input=png; output=webp"

    def test_second_request_hits_cache(self, client):
        client.get("/resize", params={"src": SRC, "w": "60"})
        response = client.get("/resize", params={"src": SRC, "w": "60"})
        assert response.headers["x-cache"] == "HIT"

    def test_missing_src(self, client):
        response = client.get("/resize")
        assert response.status_code == 400
        assert response.text == "Missing src parameter"

    def test_invalid_src_escape(self, client):
        response = client.get("/resize", params={"src": "https://cdn.example.com/100%zz.png"})
        assert response.status_code == 400
        assert response.text == 'Invalid src URL: invalid URL escape "%zz"'

    def test_invalid_parameters(self, client):
        response = client.get("/resize", params={"src": SRC, "c": "1x2x3"})
        assert response.status_code == 400
        assert response.text == "Invalid parameters: invalid crop format, use c=100 or c=100x100"

    def test_placeholder(self, client):
        response = client.get("/resize", params={"src": "https://cdn.example.com/gone.png"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("image/svg+xml")
        assert "Image not available" in response.text

    def test_forbidden_domain(self, client, services):
        services.referers.track("https://leech.com/")
        client.post("/config/toggle-domain", json={"domain": "leech.com"})

        response = client.get("/resize", params={"src": SRC, "w": "10"}, headers={"Referer": "https://leech.com/"})
        assert response.status_code == 403


class TestConfigEndpoints:

    def test_config(self, client):
        client.get("/resize", params={"src": SRC, "w": "40"}, headers={"Referer": "https://blog.net/"})

        response = client.get("/config")
        assert response.status_code == 200
        data = response.json()
        assert data["port"] == 8080
        assert data["max_db_size_mb"] == 1000
        assert data["webp_quality"] == 90
        assert data["image_count"] == 2
        assert data["db_size_bytes"] > 0
        assert data["usage_percent"] == 0
        assert data["referer_stats"] == [{"domain": "blog.net", "total_count": 1, "is_disabled": False}]
        assert data["eviction"]["state"] == "idle"

    def test_referer_stats(self, client):
        client.get("/resize", params={"src": SRC}, headers={"Referer": "https://blog.net/"})

        response = client.get("/config/referers")
        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats[0]["domain"] == "blog.net"
        assert stats[0]["date_requested"] == date.today().isoformat()

    def test_referer_stats_rejects_reversed_range(self, client):
        response = client.get("/config/referers", params={"start": "2024-05-10", "end": "2024-05-01"})
        assert response.status_code == 400

    def test_toggle_requires_domain(self, client):
        response = client.post("/config/toggle-domain", json={"domain": ""})
        assert response.json() == {"success": False, "error": "Domain is required"}

    @pytest.mark.parametrize("content", ["{not json", "", '["example.com"]', '{"domain": 5}'])
    def test_toggle_rejects_malformed_body(self, client, content):
        response = client.post(
            "/config/toggle-domain",
            content=content,
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json() == {"success": False, "error": "Invalid JSON"}

    @pytest.mark.parametrize("domain", ["direct", "hidden", "unknown"])
    def test_toggle_rejects_special_domains(self, client, services, domain):
        response = client.post("/config/toggle-domain", json={"domain": domain})
        assert response.json() == {"success": False, "error": "Cannot toggle status for special domains"}
        assert not services.referers.is_disabled(domain)

    def test_toggle_twice(self, client, services):
        services.referers.track("https://example.com/")

        first = client.post("/config/toggle-domain", json={"domain": "example.com"})
        assert first.json() == {"success": True, "disabled": True}

        second = client.post("/config/toggle-domain", json={"domain": "example.com"})
        assert second.json() == {"success": True, "disabled": False}

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["cache_db"] == "healthy"
        assert data["services"]["referer_db"] == "healthy"


class TestConfigFormatting:

    def test_readable_size(self):
        assert readable_size(512) == "0.50 KB"
        assert readable_size(3 * 1024 * 1024) == "3.00 MB"

    def test_usage_percent(self):
        assert usage_percent(0, 1000) == 0
        assert usage_percent(995, 1000) == 100
        assert usage_percent(10, 0) == 0

    def test_average_image_size(self):
        assert average_image_size(0, 0) == "N/A"
        assert average_image_size(4096, 2) == "2.00 KB"


class TestSettings:

    def test_invalid_quality_falls_back(self):
        assert Settings(quality=5, _env_file=None).quality == 90
        assert Settings(quality="high", _env_file=None).quality == 90
        assert Settings(quality=55, _env_file=None).quality == 55

    def test_negative_max_age_falls_back(self):
        assert Settings(max_age=-1, _env_file=None).max_age == 86400

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_DB_SIZE", "250")
        monkeypatch.setenv("MAX_DIMENSION", "-3")
        settings = Settings(_env_file=None)
        assert settings.max_db_size_bytes == 250 * 1024 * 1024
        assert settings.max_dimension == 0
