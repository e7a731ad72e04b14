"""
Pytest configuration file.

Adds the project root to Python path so tests import chat_router
without an editable install.
"""

import os
import sys

_project_root = os.path.dirname(os.path.abspath(__file__))

if _project_root not in sys.path:
    sys.path.insert(0, _project_root)
