"""
Content access gating service package.

Decides whether a user may open a MODULE or LESSON of a course. It
provides:

- app.main: API surface for access checks, rule authoring and webhooks.
- app.rules: Rule model, evaluators, prerequisite graph and engine.
- app.cache: Decision caches (in-memory and Redis) with invalidation.
- app.persistence: Rule Store backends (PostgreSQL and in-memory).
- app.progress: Progress Oracle clients (HTTP and in-memory).
- app.events: Invalidation events from Kafka or webhooks.

Guidelines:
- Evaluation is stateless; the cache is the only shared mutable state.
- Fail closed: errors and ambiguity always lock the resource.
"""
