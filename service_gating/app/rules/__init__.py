"""
Access rules package.

Defines the tagged-union rule configuration, one evaluator per rule type,
the per-course prerequisite graph and the engine that AND-combines rule
verdicts into an ``AccessCheckResult``.

Modules of interest:
- models: AccessControl, configuration variants, UserContext, results.
- evaluators: Pure per-type evaluators and the custom rule registry.
- graph: Adjacency structure and write-time cycle validation.
- engine: Fail-closed combination, predecessor resolution and caching.
"""
