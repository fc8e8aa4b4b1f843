"""
Limiter service package.

Admits or rejects callers against a per-identity budget kept in Redis, so
any number of stateless replicas enforce one limit.

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.config: Admission policy settings.
- app.ratelimit: Token bucket, fixed window and middleware.
"""
