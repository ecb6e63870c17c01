"""
Disaster response coordinator.

- `cache.py`: TTL cache for upstream responses (memory or sqlite)
- `gateway.py`: cached, single-flight front for the mocked providers
- `geo.py`: radius search over resources
- `storage.py`: audit-trailed record store (aiosqlite)
- `broadcast.py`: fan-out of mutation events to observers
- `app.py`: FastAPI + WebSocket surface
"""

__version__ = "0.1.0"
