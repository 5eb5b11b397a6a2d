"""
Review server: FastAPI app streaming code reviews as server-sent events.

Run:  python -m web [--port 8765] [--dir /path/to/repo]
"""

import logging
from typing import Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from config import app_config
from web import api_review
from web.state import ServerState

logger = logging.getLogger(__name__)


def create_app(state: Optional[ServerState] = None) -> FastAPI:
    app = FastAPI(title=app_config.title)
    app.state.server = state or ServerState()
    app.include_router(api_review.router)
    return app


app = create_app()
