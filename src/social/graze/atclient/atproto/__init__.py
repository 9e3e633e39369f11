"""
AT Protocol Integration

This package handles DPoP-authenticated communication with AT Protocol
services (PDS and authorization servers).

Key Components:
- jwt.py: DPoP proof and client assertion JWT construction
- request.py: Request executor and response classification
- dpop.py: Proof generator, nonce tracker and the nonce-retrying dispatcher
- client.py: Session client holding the token pair, with refresh-and-retry
- pds.py: Authorization server metadata discovery

Retry Rules:
1. A ``use_dpop_nonce`` rejection is retried once by the dispatcher
2. An expired access token is refreshed and the request retried once by the
   session client

The two rules are independent, so a refreshed request may itself be retried
once for a nonce.
"""
