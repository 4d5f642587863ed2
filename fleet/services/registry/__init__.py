"""Persistent registries: global identities, tenants, bot instances, placement."""
