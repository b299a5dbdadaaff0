#!/usr/bin/env python3
"""
Rating Engine API Server Launcher
"""

import os
import sys

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from dotenv import load_dotenv

from api import create_app

if __name__ == '__main__':
    load_dotenv()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 5000))
    create_app().run(host=host, port=port, debug=os.getenv("FLASK_DEBUG", "").lower() == "true")
