# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Code context retrieval: semantic indexes, dependency expansion and token budgeting."""

from .config import Config, get_config, load_config
from .engine import ContextEngine
from .models import CodeContext, SearchPlan

__version__ = "0.1.0"

__all__ = [
    "CodeContext",
    "Config",
    "ContextEngine",
    "SearchPlan",
    "get_config",
    "load_config",
]
