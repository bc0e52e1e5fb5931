"""Zigbee coordinator adapter drivers (ZiGate, ZBOSS NCP) and ZCL frame helpers."""

__version__ = "0.1.0"

__all__ = ["radio", "zboss", "zboss_frame", "zcl", "zigate", "zigate_frame"]