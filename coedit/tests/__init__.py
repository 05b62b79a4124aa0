"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Conflict detection and resolution parsing
    - Session tracking, reaper and edit state machine
    - Change notification ordering and unsubscribe
    - Concurrency manager save path and record editor
    - Store adapters (in-memory, PostgreSQL and Redis with fake clients)
    - Configuration, retry, metrics and logging
"""
