"""
PostgreSQL Rule Store.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import AccessLayerException, ExternalServiceError
from .base import RuleStore
from ..rules.models import (
    AccessControl, AccessControlType, ResourceType, dump_configuration, utcnow
)

_SELECT = """
    SELECT id, resource_type, resource_id, course_id, type, active, configuration,
           created_by_id, created_at, updated_at
    FROM access_controls
"""

_UPSERT = """
    INSERT INTO access_controls (
        id, resource_type, resource_id, course_id, type, active,
        configuration, created_by_id, created_at, updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
    ON CONFLICT (id) DO UPDATE SET
        type = EXCLUDED.type,
        active = EXCLUDED.active,
        configuration = EXCLUDED.configuration,
        updated_at = EXCLUDED.updated_at
"""


class PostgresRuleStore(RuleStore):
    """Rules persisted in ``access_controls`` with a JSONB configuration."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("gating.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=self._init_connection
            )
            await self._create_tables()
            self.logger.info("PostgreSQL rule store started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL rule store", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL rule store stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS access_controls (
                    id VARCHAR(255) PRIMARY KEY,
                    resource_type VARCHAR(20) NOT NULL,
                    resource_id VARCHAR(255) NOT NULL,
                    course_id VARCHAR(255) NOT NULL,
                    type VARCHAR(40) NOT NULL,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    configuration JSONB NOT NULL,
                    created_by_id VARCHAR(255),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_access_controls_resource
                ON access_controls(resource_type, resource_id) WHERE active;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_access_controls_course
                ON access_controls(course_id) WHERE active;
            """)

    async def _fetch(self, query: str, *args) -> List[AccessControl]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Error reading rules", error=str(e))
            raise ExternalServiceError("rule_store", str(e)) from e
        return [self._row_to_rule(row) for row in rows]

    async def get_active_rules(self, resource_type: ResourceType, resource_id: str) -> List[AccessControl]:
        return await self._fetch(
            _SELECT + " WHERE resource_type = $1 AND resource_id = $2 AND active ORDER BY created_at, id",
            ResourceType(resource_type).value, resource_id
        )

    async def get_all_active_rules_for_course(self, course_id: str) -> List[AccessControl]:
        return await self._fetch(
            _SELECT + " WHERE course_id = $1 AND active ORDER BY created_at, id",
            course_id
        )

    async def get_rule(self, rule_id: str) -> Optional[AccessControl]:
        rules = await self._fetch(_SELECT + " WHERE id = $1", rule_id)
        return rules[0] if rules else None

    @staticmethod
    def _upsert_args(rule: AccessControl) -> tuple:
        return (
            rule.id, rule.resource_type.value, rule.resource_id, rule.course_id,
            rule.type.value, rule.active, dump_configuration(rule.configuration),
            rule.created_by_id, rule.created_at, rule.updated_at
        )

    async def save_rule(self, rule: AccessControl) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(_UPSERT, *self._upsert_args(rule))
            self.logger.info("Rule saved", rule_id=rule.id, resource_id=rule.resource_id, type=rule.type.value)
            return True
        except Exception as e:
            self.logger.error("Error saving rule", rule_id=rule.id, error=str(e))
            return False

    async def save_rules(self, rules: List[AccessControl]) -> bool:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(_UPSERT, [self._upsert_args(rule) for rule in rules])
            self.logger.info("Rules saved", count=len(rules))
            return True
        except Exception as e:
            self.logger.error("Error saving rules", count=len(rules), error=str(e))
            return False

    async def set_active(self, rule_id: str, active: bool) -> Optional[AccessControl]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE access_controls SET active = $2, updated_at = $3
                WHERE id = $1
                RETURNING id, resource_type, resource_id, course_id, type, active, configuration,
                          created_by_id, created_at, updated_at
            """, rule_id, active, utcnow())
        if row is None:
            return None
        self.logger.info("Rule active flag changed", rule_id=rule_id, active=active)
        return self._row_to_rule(row)

    async def delete_rules_for_resource(self, resource_type: ResourceType, resource_id: str) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM access_controls WHERE resource_type = $1 AND resource_id = $2
            """, ResourceType(resource_type).value, resource_id)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        count = int(result.split()[-1])
        self.logger.info("Rules deleted for resource", resource_id=resource_id, count=count)
        return count

    async def get_rule_stats(self) -> Dict[str, Any]:
        try:
            async with self.pool.acquire() as conn:
                stats = await conn.fetchrow("""
                    SELECT
                        COUNT(*) as total_rules,
                        COUNT(*) FILTER (WHERE active) as active_rules,
                        COUNT(DISTINCT course_id) as courses,
                        COUNT(DISTINCT (resource_type, resource_id)) as gated_resources
                    FROM access_controls
                """)
                return dict(stats)
        except Exception as e:
            self.logger.error("Error getting rule stats", error=str(e))
            return {}

    def _row_to_rule(self, row) -> AccessControl:
        """Convert a row; a bad configuration is kept so evaluation can fail closed."""
        rule = AccessControl.from_stored(
            id=row["id"],
            resource_type=ResourceType(row["resource_type"]),
            resource_id=row["resource_id"],
            course_id=row["course_id"],
            type=AccessControlType(row["type"]),
            active=row["active"],
            configuration=row["configuration"],
            created_by_id=row["created_by_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        if rule.config_error:
            self.logger.warning("Stored rule has invalid configuration", rule_id=rule.id, problem=rule.config_error)
        return rule

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
