"""
asgi.py -- Production application assembly for LocalBite Auth.

This is the ONLY place that calls get_settings(). Every other module receives
the Settings object through create_app().

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app
from core.config import get_settings

app = create_app(get_settings())
