"""Constants shared across the FarmBot configuration daemon."""

from __future__ import annotations

from typing import Final

# --- Runtime configuration defaults ---
DEFAULT_CONFIG_PATH: Final[str] = "/etc/farmbot/config.toml"
CONFIG_PATH_ENV: Final[str] = "FARMBOT_CONFIG"
CONFIG_TABLE: Final[str] = "farmbot"

DEFAULT_SERIAL_PORT: Final[str] = "/dev/ttyACM0"
DEFAULT_SERIAL_BAUD: Final[int] = 115200
DEFAULT_STORAGE_PATH: Final[str] = "/var/lib/farmbot/config.json"
DEFAULT_STATUS_FILE: Final[str] = "/tmp/farmbot/status.json"
DEFAULT_STATUS_INTERVAL: Final[int] = 5
DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9130

DEFAULT_BUILD_TARGET: Final[str] = "host"
DEFAULT_BUILD_COMMIT: Final[str] = "unknown"
DEFAULT_BUILD_ENV: Final[str] = "prod"

# --- Firmware flashing ---
DEFAULT_FIRMWARE_DIR: Final[str] = "/usr/share/farmbot/firmware"
FIRMWARE_IMAGE_SUFFIX: Final[str] = "-firmware.hex"
DEFAULT_FLASH_TOOL: Final[str] = "avrdude"
DEFAULT_FLASH_PART: Final[str] = "atmega2560"
DEFAULT_FLASH_PROGRAMMER: Final[str] = "wiring"
DEFAULT_FLASH_BAUD: Final[int] = 115200
# Time the serial link needs to fully release the tty after being stopped.
DEFAULT_FLASH_SETTLE_DELAY: Final[float] = 3.0

# --- Informational defaults ---
FIRMWARE_DISCONNECTED: Final[str] = "Arduino Disconnected!"
FIRMWARE_VERSION_REPORT: Final[str] = "R83"

# --- Supervisor tuning ---
SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 0.5
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0
SUPERVISOR_DEFAULT_RESTART_INTERVAL: Final[float] = 60.0
SUPERVISOR_MIN_RESTART_WINDOW: Final[float] = 10.0
SUPERVISOR_STATUS_MAX_BACKOFF: Final[float] = 10.0
SUPERVISOR_STATUS_RESTART_INTERVAL: Final[float] = 30.0
