"""Counter store adapters.

The evaluator depends only on the transactional-per-key contract in
``base``; the in-memory store serves single-process deployments and tests,
and a networked backend (Redis, SQL row locks) can replace it without
touching the evaluator.
"""
