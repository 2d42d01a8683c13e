"""Serial transport for the configuration daemon."""

from .serial import SerialException, SupervisedSerialLink, watch_firmware_reports

__all__ = ["SerialException", "SupervisedSerialLink", "watch_firmware_reports"]
