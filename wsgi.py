"""
WSGI entry point.

Point the host's WSGI configuration at this file; it exposes the Flask app
as ``application``. Run ``flask --app app seed`` once before first use.

  - Source code:    /home/<your-username>/bible-typing
  - Working dir:    /home/<your-username>/bible-typing
  - WSGI file:      /home/<your-username>/bible-typing/wsgi.py
"""
import sys
import os
import logging

# Make sure the project directory is on the path
project_dir = os.path.dirname(os.path.abspath(__file__))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from app import app as application  # noqa: E402,F401  (WSGI hosts look for 'application')
