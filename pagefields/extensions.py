from __future__ import annotations

import logging

from flask_caching import Cache

logger = logging.getLogger(__name__)

cache = Cache()
