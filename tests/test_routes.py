# tests/test_routes.py
import pytest
from fastapi.testclient import TestClient

from estatemetrics.main import create_app

from conftest import region_options


class IdleScheduler:
    running = False

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False


@pytest.fixture
def client(pipeline):
    app = create_app(pipeline=pipeline, scheduler=IdleScheduler(), enable_scheduler=False)
    with TestClient(app) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["scheduler"] is False


def test_register_and_list_regions(client):
    response = client.put("/regions/austin", json=region_options())
    assert response.status_code == 200
    assert response.json()["region"] == "austin"

    regions = client.get("/regions").json()
    assert [r["region"] for r in regions] == ["austin"]
    assert regions[0]["lastRan"] is None


def test_register_invalid_region(client):
    response = client.put("/regions/austin", json={"redfin": {"url": "https://example.com"}})
    assert response.status_code == 422


def test_fetch_and_read_report(client):
    client.put("/regions/austin", json=region_options())

    response = client.post("/regions/austin/fetch")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "region": "austin", "count": 2}

    assert client.post("/regions/austin/fetch").json()["status"] == "skipped"
    assert client.post("/regions/austin/fetch", params={"force": True}).json()["status"] == "ok"

    report = client.get("/regions/austin/report").json()
    assert {r["key"] for r in report["records"]} == {"total", "2"}
    assert report["meta"]["region"] == "austin"


def test_fetch_failure_maps_to_bad_gateway(client):
    client.put("/regions/austin", json=region_options("https://broken.example.com"))
    response = client.post("/regions/austin/fetch")
    assert response.status_code == 502


def test_unknown_region_and_index(client):
    assert client.post("/regions/nowhere/fetch").status_code == 404
    assert client.get("/regions/nowhere/report").status_code == 404
    assert client.get("/indices/missing").status_code == 404


def test_index_routes(client):
    client.put("/regions/austin", json=region_options())
    client.post("/regions/austin/fetch")

    indices = client.get("/indices").json()
    assert "austin_properties" in indices
    assert "registered_indexes" in indices

    found = client.get("/indices/austin_rentals", params={"q": "maple", "size": 3}).json()
    assert len(found["records"]) == 3

    assert client.delete("/indices/austin_rentals").json() == {"status": "deleted"}
    assert client.get("/indices/austin_rentals").status_code == 404
    assert client.delete("/indices/Bad Name").status_code == 422
