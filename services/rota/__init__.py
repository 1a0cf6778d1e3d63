"""Shared-account rota: weekly schedule, access gate and check-in / check-out."""
