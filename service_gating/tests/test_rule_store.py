"""
Unit tests for the Rule Store backends.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.errors import ExternalServiceError
from service_gating.app.persistence.memory import InMemoryRuleStore
from service_gating.app.persistence.postgres import PostgresRuleStore
from service_gating.app.rules.models import AccessControlType, ResourceType, TimeBasedConfig

from conftest import T0


class TestInMemoryRuleStore:
    """Test cases for InMemoryRuleStore."""

    @pytest.fixture
    def store(self):
        return InMemoryRuleStore()

    @pytest.mark.asyncio
    async def test_active_rules_for_resource_in_creation_order(self, store, make_rule):
        first = make_rule("m-1", {"type": "ALWAYS"})
        second = make_rule("m-1", {"type": "SEQUENTIAL"})
        other = make_rule("m-2", {"type": "ALWAYS"})
        for rule in (second, other, first):
            await store.save_rule(rule)

        rules = await store.get_active_rules(ResourceType.MODULE, "m-1")

        assert [r.id for r in rules] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_inactive_rules_are_hidden(self, store, make_rule):
        rule = make_rule("m-1", {"type": "ALWAYS"})
        await store.save_rule(rule)
        assert await store.get_active_rules("MODULE", "m-1")

        updated = await store.set_active(rule.id, False)

        assert updated.active is False
        assert await store.get_active_rules("MODULE", "m-1") == []
        assert await store.get_all_active_rules_for_course("course-1") == []
        assert (await store.get_rule(rule.id)).active is False

    @pytest.mark.asyncio
    async def test_set_active_unknown_rule(self, store):
        assert await store.set_active("missing", False) is None

    @pytest.mark.asyncio
    async def test_save_rules_stores_every_rule(self, store, make_rule):
        rules = [make_rule("m-1", {"type": "ALWAYS"}), make_rule("m-2", {"type": "SEQUENTIAL"})]
        assert await store.get_active_rules("MODULE", "m-2") == []

        assert await store.save_rules(rules) is True

        assert [r.id for r in await store.get_all_active_rules_for_course("course-1")] == [r.id for r in rules]
        assert await store.get_active_rules("MODULE", "m-2")

    @pytest.mark.asyncio
    async def test_course_rules(self, store, make_rule):
        await store.save_rule(make_rule("m-1", {"type": "ALWAYS"}))
        await store.save_rule(make_rule("m-1", {"type": "ALWAYS"}, course_id="course-2"))

        rules = await store.get_all_active_rules_for_course("course-1")

        assert len(rules) == 1

    @pytest.mark.asyncio
    async def test_delete_rules_for_resource(self, store, make_rule):
        await store.save_rule(make_rule("l-1", {"type": "ALWAYS"}, resource_type=ResourceType.LESSON))
        await store.save_rule(make_rule("l-1", {"type": "SEQUENTIAL"}, resource_type=ResourceType.LESSON))
        await store.save_rule(make_rule("l-1", {"type": "ALWAYS"}))

        assert await store.delete_rules_for_resource(ResourceType.LESSON, "l-1") == 2
        assert await store.get_active_rules(ResourceType.LESSON, "l-1") == []
        assert len(await store.get_active_rules(ResourceType.MODULE, "l-1")) == 1

    @pytest.mark.asyncio
    async def test_stats(self, store, make_rule):
        await store.save_rule(make_rule("m-1", {"type": "ALWAYS"}))
        await store.save_rule(make_rule("m-2", {"type": "ALWAYS"}, active=False))

        stats = await store.get_rule_stats()

        assert stats["total_rules"] == 2
        assert stats["active_rules"] == 1


class TestPostgresRuleStore:
    """Test cases for PostgresRuleStore."""

    @pytest.fixture
    def conn(self):
        return AsyncMock()

    @pytest.fixture
    def store(self, conn):
        store = PostgresRuleStore("postgres://localhost:5432/lms")
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        store.pool = pool
        return store

    def row(self, **overrides):
        row = {
            "id": "rule-1",
            "resource_type": "MODULE",
            "resource_id": "m-1",
            "course_id": "course-1",
            "type": "TIME_BASED",
            "active": True,
            "configuration": {"type": "TIME_BASED", "startDate": "2026-04-01", "timezone": "Europe/Paris"},
            "created_by_id": "author-1",
            "created_at": T0,
            "updated_at": T0,
        }
        row.update(overrides)
        return row

    @pytest.mark.asyncio
    async def test_rows_become_rules(self, store, conn):
        conn.fetch.return_value = [self.row()]

        rules = await store.get_active_rules(ResourceType.MODULE, "m-1")

        assert len(rules) == 1
        assert rules[0].type == AccessControlType.TIME_BASED
        assert isinstance(rules[0].configuration, TimeBasedConfig)
        assert rules[0].configuration.timezone == "Europe/Paris"
        args = conn.fetch.call_args[0]
        assert args[1:] == ("MODULE", "m-1")

    @pytest.mark.asyncio
    async def test_legacy_prerequisite_shape_is_read(self, store, conn):
        conn.fetch.return_value = [self.row(type="PREREQUISITE", configuration={
            "type": "PREREQUISITE",
            "prerequisites": [{"resourceType": "LESSON", "resourceId": "l-1"}],
        })]

        rules = await store.get_all_active_rules_for_course("course-1")

        edge = rules[0].configuration.prerequisites[0]
        assert edge.prerequisite_id == "l-1"
        assert edge.required_status.value == "COMPLETED"

    @pytest.mark.asyncio
    async def test_bad_configuration_is_kept_for_fail_closed(self, store, conn):
        conn.fetch.return_value = [self.row(configuration={"type": "SEQUENTIAL"})]

        rules = await store.get_active_rules(ResourceType.MODULE, "m-1")

        assert rules[0].configuration is None
        assert rules[0].configuration_problem() is not None

    @pytest.mark.asyncio
    async def test_read_failure_is_external_service_error(self, store, conn):
        conn.fetch.side_effect = OSError("connection lost")

        with pytest.raises(ExternalServiceError):
            await store.get_active_rules(ResourceType.MODULE, "m-1")

    @pytest.mark.asyncio
    async def test_save_rule_upserts_json_configuration(self, store, conn, make_rule):
        rule = make_rule("m-1", {"type": "USER_GROUP", "groupIds": ["g-1"]})

        assert await store.save_rule(rule) is True

        args = conn.execute.call_args[0]
        assert "ON CONFLICT (id) DO UPDATE" in args[0]
        assert args[7] == {"type": "USER_GROUP", "groupIds": ["g-1"], "requireAll": False}

    @pytest.mark.asyncio
    async def test_save_rule_failure_returns_false(self, store, conn, make_rule):
        conn.execute.side_effect = OSError("boom")

        assert await store.save_rule(make_rule("m-1", {"type": "ALWAYS"})) is False

    @pytest.mark.asyncio
    async def test_save_rules_runs_in_one_transaction(self, store, conn, make_rule):
        conn.transaction = MagicMock()
        rules = [make_rule("m-1", {"type": "ALWAYS"}), make_rule("m-2", {"type": "SEQUENTIAL"})]

        assert await store.save_rules(rules) is True

        conn.transaction.assert_called_once()
        query, args = conn.executemany.call_args[0]
        assert "ON CONFLICT (id) DO UPDATE" in query
        assert [a[0] for a in args] == [r.id for r in rules]

    @pytest.mark.asyncio
    async def test_save_rules_failure_returns_false(self, store, conn, make_rule):
        conn.transaction = MagicMock()
        conn.executemany.side_effect = OSError("boom")

        assert await store.save_rules([make_rule("m-1", {"type": "ALWAYS"})]) is False

    @pytest.mark.asyncio
    async def test_set_active(self, store, conn):
        conn.fetchrow.return_value = self.row(active=False)

        rule = await store.set_active("rule-1", False)

        assert rule.active is False
        conn.fetchrow.return_value = None
        assert await store.set_active("missing", False) is None

    @pytest.mark.asyncio
    async def test_delete_parses_command_tag(self, store, conn):
        conn.execute.return_value = "DELETE 3"

        assert await store.delete_rules_for_resource(ResourceType.LESSON, "l-1") == 3

    @pytest.mark.asyncio
    async def test_health_check(self, store, conn):
        conn.fetchval.return_value = 1
        assert await store.health_check() is True
        conn.fetchval.side_effect = OSError("refused")
        assert await store.health_check() is False
