"""HTTP surface: inbound webhooks and the tenant management API."""
