"""
Domain layer for email routing business logic.

This layer contains:
- Data models (immutable messages and routing decisions)
- Routing configuration
- Admission checks (rate limiting, spam filtering)
- Classification and the ordered routing rules
- The routing pipeline (explicit success/failure results)
"""
