"""Uvicorn entrypoint for the Sihat TCM diagnosis pipeline API.

    uvicorn api_server:app --app-dir app --port 8080
"""

from __future__ import annotations

import logging
import os

from sihat_tcm.api import create_app
from sihat_tcm.config import get_settings

logging.basicConfig(
    level=os.getenv("SIHAT_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

settings = get_settings()
app = create_app(settings)
