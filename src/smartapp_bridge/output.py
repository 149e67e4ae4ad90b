"""Output sink for dispatched events.

StdoutSink
    Writes one NDJSON line per normalized or lifecycle event to
    ``sys.stdout.buffer``. The CLI registers it as the consumer for every
    configured device so the bridge can be piped into other tools.
"""

from __future__ import annotations

import logging
import sys

from smartapp_bridge.transform import BridgeEvent, to_ndjson

logger = logging.getLogger(__name__)


class StdoutSink:
    """Serialize events to NDJSON on stdout."""

    def __init__(self) -> None:
        self._closed = False
        self.count = 0

    def __call__(self, event: BridgeEvent) -> None:
        self.write(event)

    def write(self, event: BridgeEvent) -> None:
        """Write *event* as one NDJSON line.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away. The sink closes itself and
            ignores later writes.
        """
        if self._closed:
            return
        try:
            sys.stdout.buffer.write(to_ndjson(event))
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            self._closed = True
            raise
        self.count += 1

    def close(self) -> None:
        self._closed = True
