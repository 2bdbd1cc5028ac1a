"""Business logic services.

Services are called by route handlers and orchestrate database operations,
storage and provider calls. Route handlers stay transport-only.
"""
