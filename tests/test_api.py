from fastapi.testclient import TestClient

from nodepulse.main import create_app


class StubCoordinator:
    running = True

    def __init__(self):
        self.started = []
        self.stopped = []
        self.store = self

    async def get_node(self, node_id):
        return object() if node_id == 1 else None

    async def get_status(self):
        return [{
            "node_id": 1,
            "name": "pve",
            "running": True,
            "online": True,
            "last_error": None,
            "stats": {"cpu_percent": 3.5},
            "breaker": "closed",
        }]

    def scheduler_status(self):
        return {
            "running": True,
            "tick": {"interval": 5, "collecting": False, "skipped": 2, "tracked_nodes": 1},
            "tiered_pollers": 1,
            "child_pollers": [],
            "breakers": {"total": 1, "open": 0, "half_open": 0, "closed": 1},
            "jobs": ["collection_tick"],
        }

    async def collect_now(self, node_id):
        if node_id != 1:
            return {"node_id": node_id, "success": False, "error": "Node not found"}
        return {"node_id": 1, "success": False, "skipped": True, "error": "Circuit breaker open"}

    async def start_monitoring(self, node_id):
        self.started.append(node_id)
        return True

    async def stop_monitoring(self, node_id):
        self.stopped.append(node_id)
        return True

    async def sync_all_hosts(self):
        return {"hosts": 1, "created": 2, "updated": 0, "deleted": 1, "errors": []}


def make_client():
    app = create_app(use_lifespan=False)
    coordinator = StubCoordinator()
    app.state.coordinator = coordinator
    return TestClient(app), coordinator


def test_health():
    client, _ = make_client()
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "scheduler": True}


def test_monitoring_status():
    client, _ = make_client()
    data = client.get("/api/monitoring/status").json()
    assert data[0]["node_id"] == 1
    assert data[0]["stats"]["cpu_percent"] == 3.5
    assert data[0]["breaker"] == "closed"


def test_scheduler_status():
    client, _ = make_client()
    data = client.get("/api/monitoring/scheduler").json()
    assert data["tick"]["skipped"] == 2
    assert data["breakers"]["closed"] == 1


def test_collect_reports_skip_and_404():
    client, _ = make_client()
    response = client.post("/api/monitoring/nodes/1/collect")
    assert response.status_code == 200
    assert response.json()["skipped"] is True

    assert client.post("/api/monitoring/nodes/2/collect").status_code == 404


def test_start_and_stop():
    client, coordinator = make_client()
    assert client.post("/api/monitoring/nodes/1/start").json() == {"node_id": 1, "running": True}
    assert client.post("/api/monitoring/nodes/2/start").status_code == 404
    assert client.post("/api/monitoring/nodes/1/stop").json() == {"node_id": 1, "stopped": True}
    assert coordinator.started == [1]
    assert coordinator.stopped == [1]


def test_discovery_sync():
    client, _ = make_client()
    data = client.post("/api/monitoring/discovery/sync").json()
    assert data == {"hosts": 1, "created": 2, "updated": 0, "deleted": 1, "errors": []}
