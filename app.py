# app.py
import logging

import uvicorn

from zara.api import create_app
from zara.config_loader import load_config

# ============================
# Config / logging
# ============================
# ZARA_CONFIG (env or .env) selects the file, default config/default.yaml
cfg = load_config()

logging.basicConfig(
    level=str(cfg.get("log_level", "INFO")).upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ============================
# App
# ============================
app = create_app(cfg)

if __name__ == "__main__":
    api_cfg = cfg.get("api", {}) or {}
    uvicorn.run(app, host=api_cfg.get("host", "127.0.0.1"), port=int(api_cfg.get("port", 8000)))
