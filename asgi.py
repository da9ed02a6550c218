"""
asgi.py -- Application assembly for AniRec.

Loads Settings from the environment exactly once and hands it to the app
factory. Configuration errors (missing secrets, wrong-length ENCRYPTION_KEY)
stop the process here, before any request is served.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app
from core.config import load_settings

app = create_app(load_settings())
