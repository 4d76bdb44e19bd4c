"""HTTP-level tests for the FastAPI application."""

import tempfile
import time
import unittest
from pathlib import Path

from fastapi.testclient import TestClient
from machine_sim import SimulatedMachine, flat

from surface_mesh.api.app import create_app
from surface_mesh.probe.planner import GridPlanner, SurfaceMesh
from surface_mesh.probe.store import MeshStore


class FakeSender(SimulatedMachine):
    """Simulated machine exposing the sender surface used by the routes."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.connected = True
        self.realtime = []
        self.event_sink = None

    def set_event_sink(self, callback) -> None:
        self.event_sink = callback

    def list_ports(self):
        return ["/dev/ttyFAKE0"]

    def open(self, port, baud=115200):
        self.connected = True
        return True, "Connected"

    def close(self) -> None:
        self.connected = False

    def status(self) -> dict:
        return {"state": "Idle", "port": "/dev/ttyFAKE0", "wpos": [self.x, self.y, self.z]}

    def hold(self) -> None:
        self.realtime.append("hold")

    def start(self) -> None:
        self.realtime.append("start")

    def reset(self) -> None:
        self.realtime.append("reset")


class ApiTests(unittest.TestCase):
    """Exercise the routes end to end with a simulated machine."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        self.sender = FakeSender(flat(1.0))
        self.app = create_app(sender=self.sender, data_dir=self.data_dir)
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self._tmp.cleanup()

    def _upload(self, name: str = "part.nc", text: str = "G90\nG1 X0 Y0 Z-1\nG1 X10 Y0 Z-1\n"):
        return self.client.post(
            "/mesh/program", files={"file": (name, text.encode("utf-8"), "text/plain")}
        )

    def _wait_idle(self, timeout: float = 10.0) -> dict:
        limit = time.time() + timeout
        status = self.client.get("/mesh/probe/status").json()
        while status["probing"] and time.time() < limit:
            time.sleep(0.05)
            status = self.client.get("/mesh/probe/status").json()
        return status

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_settings_round_trip(self) -> None:
        response = self.client.get("/mesh/settings")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["rows"], 5)

        response = self.client.put("/mesh/settings", json={"rows": 3, "probeFeedRate": 50})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["probeFeedRate"], 50.0)
        self.assertTrue((self.data_dir / "settings.json").exists())

    def test_invalid_settings_are_422(self) -> None:
        response = self.client.put("/mesh/settings", json={"rows": 0})
        self.assertEqual(response.status_code, 422)

    def test_program_upload_and_bounds(self) -> None:
        self.assertEqual(self.client.get("/mesh/bounds").status_code, 404)
        response = self._upload()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["bounds"]["max"]["x"], 10.0)
        self.assertEqual(self.client.get("/mesh/bounds").json()["min"]["z"], -1.0)

    def test_probe_then_apply(self) -> None:
        self._upload()
        self.client.put("/mesh/settings", json={"rows": 1, "cols": 2, "sizeX": 10, "sizeY": 0})
        response = self.client.post("/mesh/probe/start")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 2)
        status = self._wait_idle()
        self.assertFalse(status["probing"])
        self.assertIsNone(status["error"])

        mesh = self.client.get("/mesh").json()
        self.assertTrue(mesh["complete"])
        self.assertEqual(mesh["stats"]["max_z"], 1.0)
        self.assertEqual(self.client.get("/mesh/height", params={"x": 5, "y": 0}).json()["z"], 1.0)

        response = self.client.post("/mesh/apply", json={"referenceZ": 0.5})
        self.assertEqual(response.status_code, 200)
        filename = response.json()["filename"]
        self.assertEqual(filename, "part_compensated.nc")
        output = (self.data_dir / "programs" / filename).read_text(encoding="utf-8")
        self.assertIn("G1 X10 Y0 Z-0.500", output)
        self.assertIn("(Reference Z: 0.500)", output)

    def test_upload_reports_stored_name(self) -> None:
        response = self._upload(name="jobs/part.nc")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["program"], "part.nc")
        self.assertTrue((self.data_dir / "programs" / "part.nc").exists())

    def test_height_query_must_be_finite(self) -> None:
        grid = GridPlanner.from_size(10.0, 10.0, 2, 2).anchored_at(0.0, 0.0)
        mesh = SurfaceMesh.empty(grid)
        for row in range(2):
            for col in range(2):
                mesh.record(row, col, 0.5)
        MeshStore(self.data_dir / "mesh.json").save(mesh.freeze())
        self.client.post("/mesh/load")

        self.assertEqual(self.client.get("/mesh/height", params={"x": "nan", "y": 0}).status_code, 422)
        self.assertEqual(self.client.get("/mesh/height", params={"x": 0, "y": "inf"}).status_code, 422)
        response = self.client.get("/mesh/height", params={"x": 1e6, "y": -1e6})
        self.assertEqual(response.json()["z"], 0.5)

    def test_probe_requires_connection(self) -> None:
        self.sender.connected = False
        self.assertEqual(self.client.post("/mesh/probe/start").status_code, 409)

    def test_single_point_grid_rejected(self) -> None:
        self.client.put("/mesh/settings", json={"rows": 1, "cols": 1})
        response = self.client.post("/mesh/probe/start")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.sender.commands, [])

    def test_stop_without_run(self) -> None:
        self.assertEqual(self.client.post("/mesh/probe/stop").json(), {"status": "idle"})

    def test_apply_without_mesh_is_rejected(self) -> None:
        self._upload()
        response = self.client.post("/mesh/apply")
        self.assertEqual(response.status_code, 400)
        self.assertIn("No mesh", response.json()["detail"])

    def test_mesh_persistence_routes(self) -> None:
        self.assertEqual(self.client.get("/mesh").status_code, 404)
        self.assertEqual(self.client.post("/mesh/save").status_code, 409)
        self.assertEqual(self.client.post("/mesh/load").status_code, 404)

        grid = GridPlanner.from_size(10.0, 10.0, 2, 2).anchored_at(0.0, 0.0)
        mesh = SurfaceMesh.empty(grid)
        for row in range(2):
            for col in range(2):
                mesh.record(row, col, 0.5)
        MeshStore(self.data_dir / "mesh.json").save(mesh.freeze())

        loaded = self.client.post("/mesh/load")
        self.assertEqual(loaded.status_code, 200)
        self.assertEqual(loaded.json()["gridParams"]["cols"], 2)
        self.assertEqual(self.client.post("/mesh/save").status_code, 200)
        self.assertEqual(self.client.delete("/mesh").json(), {"status": "cleared"})
        self.assertEqual(self.client.get("/mesh").status_code, 404)

    def test_saved_mesh_restored_on_startup(self) -> None:
        grid = GridPlanner.from_size(10.0, 0.0, 1, 2).anchored_at(0.0, 0.0)
        mesh = SurfaceMesh.empty(grid)
        mesh.record(0, 0, 1.0)
        mesh.record(0, 1, 2.0)
        MeshStore(self.data_dir / "mesh.json").save(mesh.freeze())

        app = create_app(sender=FakeSender(flat(0.0)), data_dir=self.data_dir)
        with TestClient(app) as client:
            payload = client.get("/mesh").json()
        self.assertEqual(payload["mesh"][0][1]["z"], 2.0)

    def test_sender_routes(self) -> None:
        self.assertEqual(self.client.get("/sender/ports").json(), {"ports": ["/dev/ttyFAKE0"]})
        self.assertEqual(self.client.get("/sender/status").json()["state"], "Idle")
        self.assertEqual(self.client.post("/sender/hold").json(), {"status": "hold"})
        self.assertEqual(self.sender.realtime, ["hold"])
        response = self.client.post("/sender/command", json={"gcode": "G90"})
        self.assertEqual(response.status_code, 200)
        response = self.client.post("/sender/command", json={"gcode": "M3 S1000"})
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
