"""
x402 Payment Protocol Integration Module.

This module implements the resource-server side of the payment protocol:
the challenge/retry handshake in front of protected routes, plus the
ambient pieces shared with the facilitator API.

Key components:
- middleware: ChallengeMiddleware issuing 402 challenges and checking proof
- headers: typed challenge and proof header records
- facilitator_client: HTTP client for a remote facilitator
- ratelimit: per-IP quotas for request creation and verification
- audit: JSON-lines audit trail of payment events

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
