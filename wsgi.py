# wsgi.py
import os
from app import create_app
from config import config_from_env

# APP_CONFIG=production|development|testing
app = create_app(config_from_env())

# Local dev only: `python wsgi.py`
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
