"""
Arena Service - Matchmaking and live match engine

Responsibilities:
- Skill-aware queues per game type and match type
- Pairing scans (event driven, heartbeat as safety net)
- Authoritative turn-based sessions with timers and reconnect grace
- ELO rating updates and the persisted rating ledger
- Match result stream (Cloud Pub/Sub)
"""
