"""
WSGI entrypoint:
  gunicorn certledger.wsgi:app
"""

import os

from certledger.app import create_app

app = create_app()

if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port)
