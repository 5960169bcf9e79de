"""
HTTP surface tests.

The app is built around the test store and a fake dispatcher, and driven
through httpx.ASGITransport (no lifespan: the worker and scheduler stay off).
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from cohortwatch.api.app import create_app
from cohortwatch.monitoring.schemas import Alert, AlertSeverity
from conftest import INSTITUTION_ID, make_student

BASE = f"/api/v1/institutions/{INSTITUTION_ID}"


@pytest.fixture
def api_app(store, dispatcher):
    return create_app(store=store, dispatcher=dispatcher, enable_scheduler=False)


@pytest_asyncio.fixture
async def client(api_app):
    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as c:
        yield c


async def _seed_alerts(alert_manager, *student_ids):
    created = []
    for student_id in student_ids:
        created.append(
            await alert_manager.create_alert(
                Alert(
                    institution_id=INSTITUTION_ID,
                    student_id=student_id,
                    severity=AlertSeverity.WARNING,
                    title=f"Low engagement: {student_id}",
                )
            )
        )
    return created


# ── Health ────────────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "cohortwatch"
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


# ── Analysis ──────────────────────────────────────────────────────────


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_run_analysis(self, client, seed):
        await seed.students(make_student("stu_a", risk=85), make_student("stu_b", risk=10))
        await seed.rule("r_high", "risk_high")

        response = await client.post(f"{BASE}/analysis/run")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["analyzed"] == 2
        assert data["executed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_institution(self, client):
        response = await client.post("/api/v1/institutions/inst_missing/analysis/run")

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_busy(self, client, api_app):
        async with api_app.state.engine._batch_lock(INSTITUTION_ID):
            response = await client.post(f"{BASE}/analysis/run", json={"wait": False})

        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "busy"

    @pytest.mark.asyncio
    async def test_rule_test(self, client, seed):
        await seed.students(make_student("stu_a", risk=85))
        await seed.rule("r_high", "risk_high")
        await seed.rule("r_docs", "documents_pending")

        matched = await client.post(f"{BASE}/rules/r_high/test")
        unmatched = await client.post(f"{BASE}/rules/r_docs/test")

        assert matched.json()["matched"] is True
        assert matched.json()["result"]["status"] == "executed"
        assert unmatched.json() == {"matched": False, "result": None}

    @pytest.mark.asyncio
    async def test_rule_test_misconfigured(self, client, seed):
        await seed.rule("r_bad", "unknown_key")
        response = await client.post(f"{BASE}/rules/r_bad/test")

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "configuration"

    @pytest.mark.asyncio
    async def test_publish_event(self, client, api_app):
        response = await client.post(
            f"{BASE}/events", json={"student_id": "stu_a", "kind": "record_created"}
        )

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "pending": 1}
        assert api_app.state.events.pending == 1


# ── Students ──────────────────────────────────────────────────────────


class TestStudents:
    @pytest.mark.asyncio
    async def test_signal(self, client, seed):
        await seed.students(make_student("stu_a", risk=85))

        response = await client.get(f"{BASE}/students/stu_a/signal")

        assert response.status_code == 200
        data = response.json()
        assert data["risk_tier"] == "critical"
        assert len(data["obligations"]) == 4

    @pytest.mark.asyncio
    async def test_signal_unknown_student(self, client):
        response = await client.get(f"{BASE}/students/stu_missing/signal")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicates(self, client, seed):
        await seed.students(
            make_student("stu_a", email="A@x.com"),
            make_student("stu_b", email="a@x.com "),
            make_student("stu_c", email="c@x.com"),
        )

        response = await client.get(f"{BASE}/students/duplicates")

        assert response.json() == {
            "duplicates": {"stu_a": ["stu_b"], "stu_b": ["stu_a"]},
            "total": 2,
        }

    @pytest.mark.asyncio
    async def test_intervention(self, client, seed, dispatcher):
        await seed.students(make_student("stu_a", name="Ana"))

        response = await client.post(
            f"{BASE}/students/stu_a/interventions",
            json={"action_type": "send_email", "action_config": {"template": "support"}},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "executed"
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_intervention_unknown_action(self, client, seed):
        await seed.students(make_student("stu_a"))

        response = await client.post(
            f"{BASE}/students/stu_a/interventions", json={"action_type": "send_pigeon"}
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "E4000"


# ── Alerts ────────────────────────────────────────────────────────────


class TestAlerts:
    @pytest.mark.asyncio
    async def test_list_and_count(self, client, alert_manager):
        await _seed_alerts(alert_manager, "stu_a", "stu_b", "stu_b")

        listing = await client.get(f"{BASE}/alerts", params={"student_id": "stu_b"})
        count = await client.get(f"{BASE}/alerts/unread-count")

        assert listing.json()["total"] == 2
        assert count.json() == {"unread": 3}

    @pytest.mark.asyncio
    async def test_mark_read(self, client, alert_manager):
        (alert,) = await _seed_alerts(alert_manager, "stu_a")

        response = await client.post(f"{BASE}/alerts/{alert.id}/read")

        assert response.status_code == 200
        assert response.json()["read"] is True
        assert (await client.get(f"{BASE}/alerts/unread-count")).json() == {"unread": 0}

    @pytest.mark.asyncio
    async def test_mark_read_unknown(self, client):
        response = await client.post(f"{BASE}/alerts/alert_missing/read")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_read_all(self, client, alert_manager):
        await _seed_alerts(alert_manager, "stu_a", "stu_b")

        scoped = await client.post(f"{BASE}/alerts/read-all", json={"student_ids": ["stu_a"]})
        rest = await client.post(f"{BASE}/alerts/read-all")

        assert scoped.json() == {"updated": 1}
        assert rest.json() == {"updated": 1}
        unread = await client.get(f"{BASE}/alerts", params={"unread_only": True})
        assert unread.json()["total"] == 0
