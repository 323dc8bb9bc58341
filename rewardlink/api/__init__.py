"""HTTP surface for RewardLink: backend webhooks, health and metrics."""
