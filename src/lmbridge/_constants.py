"""Internal constants for the La Marzocco customer cloud."""

from __future__ import annotations

from pathlib import Path

API_BASE = "https://lion.lamarzocco.io/api/customer-app"

SIGNIN_PATH = "/auth/signin"
REFRESH_PATH = "/auth/refreshtoken"
REGISTER_PATH = "/auth/init"
DASHBOARD_PATH = "/things/{serial}/dashboard"
CHANGE_MODE_PATH = "/things/{serial}/command/CoffeeMachineChangeMode"

HEADER_INSTALLATION_ID = "X-App-Installation-Id"
HEADER_NONCE = "X-Nonce"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_REQUEST_PROOF = "X-Request-Proof"

SECRET_LENGTH = 32

TOKEN_EXPIRY_BUFFER = 30  # seconds before expiry to trigger proactive refresh
DEFAULT_TOKEN_LIFETIME = 3600  # used when the access token carries no expiry

HTTP_TIMEOUT = 15  # seconds, applied to every request

STATUS_WIDGET_CODE = "CMMachineStatus"
MODE_BREWING = "BrewingMode"
MODE_STANDBY = "StandBy"

CONFIG_DIR = Path.home() / ".config" / "lmbridge"
CRED_FILE = CONFIG_DIR / "credentials.json"
KEY_FILE = CONFIG_DIR / "installation_key.json"
