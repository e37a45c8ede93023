"""Prometheus metrics for lease renewal and session lifecycle."""

from __future__ import annotations

from prometheus_client import Counter

# outcome: renewed, dormant, stale, error, retained, rotated
vault_lease_renewals_total = Counter(
    "vault_lease_renewals_total",
    "Lease renewal attempts by outcome",
    ["outcome"],
)

# outcome: revoked, error
vault_lease_revocations_total = Counter(
    "vault_lease_revocations_total",
    "Lease revocations at shutdown by outcome",
    ["outcome"],
)

# outcome: renewed, login, stale, error
vault_session_refresh_total = Counter(
    "vault_session_refresh_total",
    "Session token refreshes by outcome",
    ["outcome"],
)


__all__ = [
    "vault_lease_renewals_total",
    "vault_lease_revocations_total",
    "vault_session_refresh_total",
]
