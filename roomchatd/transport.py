"""Reticulum Link transport for one client connection.

Payloads that fit the Link MDU go out as single packets. Larger payloads
(history pages, member lists, long messages) are carried whole as an
``RNS.Resource``; the writer waits for each resource to conclude so a
connection's events stay in order. Inbound resources are accepted up to
``max_resource_bytes`` and handed to the same packet handler.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

import RNS


def fmt_link_id(link: RNS.Link) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class PayloadTooLarge(Exception):
    pass


class LinkTransport:
    def __init__(
        self,
        link: RNS.Link,
        *,
        max_resource_bytes: int = 4 * 1024 * 1024,
        resource_timeout_s: float = 30.0,
    ) -> None:
        self.link = link
        self.max_resource_bytes = int(max_resource_bytes)
        self.resource_timeout_s = float(resource_timeout_s)
        self.log = logging.getLogger("roomchatd.transport")

    def _fits_packet(self, payload: bytes) -> bool:
        mdu = getattr(self.link, "MDU", None)
        if mdu is not None:
            return len(payload) <= mdu
        try:
            RNS.Packet(self.link, payload).pack()
            return True
        except Exception:
            return False

    def send(self, payload: bytes) -> None:
        if self._fits_packet(payload):
            RNS.Packet(self.link, payload).send()
            return

        size = len(payload)
        if size > self.max_resource_bytes:
            raise PayloadTooLarge(f"{size} > {self.max_resource_bytes} bytes")

        done = threading.Event()
        resource = RNS.Resource(
            payload,
            self.link,
            advertise=True,
            auto_compress=False,
            callback=lambda _r: done.set(),
        )
        if not done.wait(self.resource_timeout_s):
            raise TimeoutError(
                f"resource transfer timed out link_id={fmt_link_id(self.link)} size={size}"
            )
        if resource.status != RNS.Resource.COMPLETE:
            raise OSError(f"resource transfer failed status={resource.status}")
        self.log.debug(
            "Sent resource link_id=%s size=%s", fmt_link_id(self.link), size
        )

    def teardown(self) -> None:
        self.link.teardown()

    def accept_inbound(self, on_payload: Callable[[bytes], None]) -> None:
        """Route completed inbound resources to ``on_payload``."""

        def advertised(resource: RNS.Resource) -> bool:
            size = getattr(resource, "total_size", None) or getattr(resource, "size", 0)
            if size > self.max_resource_bytes:
                self.log.warning(
                    "Rejecting resource (too large: %s > %s) link_id=%s",
                    size,
                    self.max_resource_bytes,
                    fmt_link_id(self.link),
                )
                return False
            return True

        def concluded(resource: RNS.Resource) -> None:
            if resource.status != RNS.Resource.COMPLETE:
                self.log.warning(
                    "Resource transfer failed link_id=%s status=%s",
                    fmt_link_id(self.link),
                    resource.status,
                )
                return
            data = resource.data.read() if hasattr(resource.data, "read") else resource.data
            on_payload(bytes(data))

        try:
            self.link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            self.link.set_resource_callback(advertised)
            self.link.set_resource_concluded_callback(concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s",
                fmt_link_id(self.link),
                e,
            )
