"""
CREDIT RAIL - Vercel Serverless API

Serverless entry point. The FastAPI app lives in src/api/server.py; this
module only puts src/ on the import path and adapts the app with Mangum.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from api.server import app  # noqa: E402

# Mangum runs the ASGI lifespan on cold start so AppState is built once per container
handler = Mangum(app, lifespan="on")
