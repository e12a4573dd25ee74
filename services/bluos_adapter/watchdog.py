"""Systemd notify helpers for the adapter service.

Sends READY/WATCHDOG/STATUS/STOPPING messages to the systemd notify socket.
Silently no-ops when NOTIFY_SOCKET is unset (macOS / dev mode / tests).

Usage:
    from bluos_adapter.watchdog import watchdog_loop
    task = asyncio.create_task(watchdog_loop(status=lambda: "3 devices"))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger("bluos-adapter.watchdog")


def sd_notify(msg: str) -> None:
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
    finally:
        sock.close()


async def watchdog_loop(interval: int = 20, status=None):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task().

    Sends READY=1 first so systemd knows startup finished (Type=notify).
    *status* is an optional callable whose result is reported as STATUS=.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    while True:
        msg = "WATCHDOG=1"
        if status is not None:
            msg += f"\nSTATUS={status()}"
        sd_notify(msg)
        await asyncio.sleep(interval)
