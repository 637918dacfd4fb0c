"""Authentication.

Learn: One credential type — a Bearer JWT whose `sub` is the owner id.
The same verification backs HTTP routes and WebSocket handshakes.
"""
