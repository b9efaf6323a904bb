"""Collector de detecciones de tren.

Estructura:
- store.py        → EventStore append-only (SQLAlchemy)
- stats.py        → Consultas y estadísticas derivadas
- time_windows.py → CRUD genérico de ventanas temporales
- schemas.py      → Modelos de request/response
- endpoints/      → Routers FastAPI
- main.py         → create_app() y entry point
"""
