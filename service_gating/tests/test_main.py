"""
API tests for the gating service.
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from shared.config import get_config
from service_gating.app.main import GatingService
from service_gating.app.rules.models import ProgressStatus


def memory_config(**overrides):
    return get_config(
        rule_store_backend="memory",
        cache_backend="memory",
        progress_backend="memory",
        **overrides
    )


class TestGatingService:
    """Test cases for the gating HTTP API."""

    @pytest.fixture
    def service(self, clock, course_outline):
        service = GatingService(config=memory_config(), clock=clock)
        service.progress_oracle.set_outline("course-1", course_outline)
        service.progress_oracle.enroll("user-1", "course-1", clock() - timedelta(days=3))
        return service

    @pytest.fixture
    def client(self, service):
        return TestClient(service.app)

    def create_rule(self, client, resource_id, configuration, resource_type="MODULE"):
        response = client.post("/access/rules", json={
            "resourceType": resource_type,
            "resourceId": resource_id,
            "courseId": "course-1",
            "type": configuration["type"],
            "configuration": configuration,
            "createdById": "author-1",
        })
        assert response.status_code == 201, response.text
        return response.json()

    def check(self, client, resource_id, resource_type="MODULE", user_id="user-1"):
        response = client.post("/access/check", json={
            "userId": user_id, "resourceType": resource_type, "resourceId": resource_id
        })
        assert response.status_code == 200, response.text
        return response.json()

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "gating"

    def test_health(self, client):
        data = client.get("/health").json()

        assert data["status"] == "ok"
        assert set(data["dependencies"]) == {"rule_store", "decision_cache", "progress_service"}

    def test_health_degraded_when_progress_down(self, client, service):
        service.progress_oracle.available = False

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["dependencies"]["progress_service"] == "error"

    def test_metrics(self, client):
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_unruled_resource_is_open(self, client):
        data = self.check(client, "m-1")

        assert data == {"hasAccess": True, "reason": "no restrictions", "unlocksAt": None, "requiredActions": []}

    def test_sequential_module_is_locked(self, client):
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})

        data = self.check(client, "m-2")

        assert data["hasAccess"] is False
        assert data["reason"] == "Complete the previous module first"
        assert data["requiredActions"] == [{
            "type": "COMPLETE_CONTENT",
            "resourceId": "m-1",
            "resourceType": "MODULE",
            "description": "Complete the previous module",
        }]

    def test_time_based_lock_reports_unlock_time(self, client):
        self.create_rule(client, "m-1", {"type": "TIME_BASED", "startDate": "2026-04-01"})

        data = self.check(client, "m-1")

        assert data["hasAccess"] is False
        assert data["unlocksAt"].startswith("2026-04-01T00:00:00")

    def test_unknown_resource_type_is_rejected(self, client):
        response = client.post("/access/check", json={
            "userId": "user-1", "resourceType": "QUIZ", "resourceId": "q-1"
        })

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_check_is_fail_closed_when_progress_unavailable(self, client, service):
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})
        service.progress_oracle.available = False

        data = self.check(client, "m-2")

        assert data["hasAccess"] is False
        assert data["reason"] == "evaluation error"

    def test_strict_check_surfaces_upstream_errors(self, client, service):
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})
        service.progress_oracle.available = False

        response = client.post("/access/check", json={
            "userId": "user-1", "resourceType": "MODULE", "resourceId": "m-2", "strict": True
        })

        assert response.status_code == 503
        assert response.json()["code"] == "UPSTREAM_UNAVAILABLE"

    def test_batch_covers_every_module_and_lesson(self, client):
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})

        response = client.get("/access/courses/course-1/users/user-1")

        assert response.status_code == 200
        data = response.json()
        assert data["userId"] == "user-1"
        assert set(data["results"]) == {"m-1", "m-2", "l-1", "l-2", "l-3", "l-4"}
        assert data["results"]["m-2"]["hasAccess"] is False
        assert data["results"]["l-3"]["hasAccess"] is True

    def test_create_rule_with_mismatched_configuration(self, client):
        response = client.post("/access/rules", json={
            "resourceType": "MODULE",
            "resourceId": "m-1",
            "courseId": "course-1",
            "type": "TIME_BASED",
            "configuration": {"type": "SEQUENTIAL"},
        })

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_CONFIGURATION"

    def test_create_rule_with_invalid_configuration(self, client):
        response = client.post("/access/rules", json={
            "resourceType": "MODULE",
            "resourceId": "m-1",
            "courseId": "course-1",
            "type": "ENROLLMENT_DURATION",
            "configuration": {"type": "ENROLLMENT_DURATION", "minDays": 7, "maxDays": 3},
        })

        assert response.status_code == 400

    def test_prerequisite_cycle_is_rejected(self, client):
        def requires(resource_id, prerequisite_id):
            return {
                "type": "PREREQUISITE",
                "prerequisites": [{"prerequisiteType": "LESSON", "prerequisiteId": prerequisite_id}],
            }

        self.create_rule(client, "l-1", requires("l-1", "l-2"), resource_type="LESSON")
        self.create_rule(client, "l-2", requires("l-2", "l-3"), resource_type="LESSON")

        response = client.post("/access/rules", json={
            "resourceType": "LESSON",
            "resourceId": "l-3",
            "courseId": "course-1",
            "type": "PREREQUISITE",
            "configuration": requires("l-3", "l-1"),
        })

        assert response.status_code == 409
        assert response.json()["code"] == "PREREQUISITE_CYCLE"
        assert client.get("/access/courses/course-1/rules").json()["total"] == 2

    def bulk_item(self, resource_id, configuration, resource_type="LESSON"):
        return {
            "resourceType": resource_type,
            "resourceId": resource_id,
            "courseId": "course-1",
            "type": configuration["type"],
            "configuration": configuration,
        }

    def test_bulk_create_rules(self, client):
        response = client.post("/access/rules/bulk", json={"accessControls": [
            self.bulk_item("m-2", {"type": "SEQUENTIAL"}, resource_type="MODULE"),
            self.bulk_item("l-2", {
                "type": "PREREQUISITE",
                "prerequisites": [{"prerequisiteType": "LESSON", "prerequisiteId": "l-1"}],
            }),
        ]})

        assert response.status_code == 201
        assert response.json()["total"] == 2
        assert client.get("/access/courses/course-1/rules").json()["total"] == 2
        assert self.check(client, "m-2")["hasAccess"] is False
        assert self.check(client, "l-2", resource_type="LESSON")["hasAccess"] is False

    def test_bulk_create_rejects_cycle_between_new_rules(self, client):
        def requires(prerequisite_id):
            return {
                "type": "PREREQUISITE",
                "prerequisites": [{"prerequisiteType": "LESSON", "prerequisiteId": prerequisite_id}],
            }

        response = client.post("/access/rules/bulk", json={"accessControls": [
            self.bulk_item("l-1", requires("l-2")),
            self.bulk_item("l-2", requires("l-1")),
        ]})

        assert response.status_code == 409
        assert response.json()["code"] == "PREREQUISITE_CYCLE"
        assert client.get("/access/courses/course-1/rules").json()["total"] == 0

    def test_bulk_create_is_all_or_nothing(self, client):
        response = client.post("/access/rules/bulk", json={"accessControls": [
            self.bulk_item("l-1", {"type": "ALWAYS"}),
            self.bulk_item("l-2", {"type": "ENROLLMENT_DURATION", "minDays": 7, "maxDays": 3}),
        ]})

        assert response.status_code == 400
        assert client.get("/access/courses/course-1/rules").json()["total"] == 0

    def test_bulk_create_needs_at_least_one_rule(self, client):
        response = client.post("/access/rules/bulk", json={"accessControls": []})

        assert response.status_code == 422

    def test_predecessor_rule_change_refreshes_successor(self, client, clock):
        """m-2's grace period counts from m-1's opening, so editing m-1 must reach m-2."""
        predecessor = self.create_rule(client, "m-1", {"type": "TIME_BASED", "startDate": "2026-04-01"})
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL", "gracePeriod": 24})
        clock.advance(seconds=1)
        assert self.check(client, "m-2")["hasAccess"] is False
        clock.advance(seconds=1)

        client.put(f"/access/rules/{predecessor['id']}", json={"type": "ALWAYS", "configuration": {"type": "ALWAYS"}})
        clock.advance(seconds=1)

        assert self.check(client, "m-2")["hasAccess"] is True

    def test_update_rule(self, client, clock):
        rule = self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})
        assert self.check(client, "m-2")["hasAccess"] is False
        clock.advance(seconds=1)

        response = client.put(f"/access/rules/{rule['id']}", json={
            "type": "ALWAYS", "configuration": {"type": "ALWAYS"}
        })

        assert response.status_code == 200
        assert response.json()["type"] == "ALWAYS"
        assert self.check(client, "m-2")["hasAccess"] is True

    def test_update_keeps_configuration_when_omitted(self, client):
        rule = self.create_rule(client, "m-2", {"type": "SEQUENTIAL", "gracePeriod": 24})

        response = client.put(f"/access/rules/{rule['id']}", json={"active": False})

        assert response.json()["active"] is False
        assert response.json()["configuration"]["gracePeriod"] == 24

    def test_update_unknown_rule(self, client):
        response = client.put("/access/rules/missing", json={"active": False})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_disable_rule_reopens_resource(self, client, clock):
        rule = self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})
        assert self.check(client, "m-2")["hasAccess"] is False
        clock.advance(seconds=1)

        response = client.post(f"/access/rules/{rule['id']}/disable")

        assert response.status_code == 200
        assert response.json()["active"] is False
        assert self.check(client, "m-2")["reason"] == "no restrictions"
        assert client.get("/access/courses/course-1/rules").json()["total"] == 0

    def test_disable_unknown_rule(self, client):
        assert client.post("/access/rules/missing/disable").status_code == 404

    def test_deleting_a_resource_removes_its_rules(self, client, clock):
        self.create_rule(client, "l-2", {"type": "SEQUENTIAL"}, resource_type="LESSON")
        self.create_rule(client, "l-2", {"type": "ENROLLMENT_DURATION", "minDays": 30}, resource_type="LESSON")
        assert self.check(client, "l-2", resource_type="LESSON")["hasAccess"] is False
        clock.advance(seconds=1)

        response = client.delete("/access/resources/LESSON/l-2/rules")

        assert response.json() == {"deleted": 2}
        assert self.check(client, "l-2", resource_type="LESSON")["hasAccess"] is True

    def test_progress_webhook_invalidates_cached_decisions(self, client, service, clock):
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})
        clock.advance(seconds=1)
        assert self.check(client, "m-2")["hasAccess"] is False

        service.progress_oracle.record_progress("user-1", "course-1", "MODULE", "m-1", ProgressStatus.COMPLETED)
        assert self.check(client, "m-2")["hasAccess"] is False

        clock.advance(seconds=1)
        response = client.post("/events/progress", json={"userId": "user-1", "courseId": "course-1"})

        assert response.json() == {"event": "progress", "invalidated": 1}
        clock.advance(seconds=1)
        assert self.check(client, "m-2")["hasAccess"] is True

    def test_enrollment_and_rule_webhooks(self, client):
        enrollment = client.post("/events/enrollment", json={"userId": "user-1", "courseId": "course-1"})
        rule = client.post("/events/rules", json={"resourceType": "LESSON", "resourceId": "l-1"})
        malformed = client.post("/events/rules", json={"resourceId": "l-1"})

        assert enrollment.json()["event"] == "enrollment"
        assert rule.json()["event"] == "rule"
        assert malformed.status_code == 422

    def test_stats(self, client):
        self.create_rule(client, "m-2", {"type": "SEQUENTIAL"})

        data = client.get("/access/stats").json()

        assert data["rules"]["active_rules"] == 1
        assert data["cache"]["backend"] == "memory"
        assert data["event_consumer"] == []
