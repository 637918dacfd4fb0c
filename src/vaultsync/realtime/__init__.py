"""Real-time infrastructure — owner rooms + Redis relay + WebSocket.

Learn: Events flow through two hops:
1. Worker → Redis PUBLISH on {prefix}:owner:{id} (RedisEventPublisher)
2. Redis PSUBSCRIBE → ConnectionManager → every socket in owner:{id}

In a single process the worker can hand events straight to the
ConnectionManager, which implements the same emit_to_owner() interface.
"""
