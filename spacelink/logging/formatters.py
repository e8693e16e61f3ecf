"""Logging formatters for remote command output."""

import logging


class StreamFormatter(logging.Formatter):
    """Prefix records carrying remote output with the stream they came from.

    ``RemoteChannel`` logs every line a remote command prints with
    ``extra={"stream": ..., "host": ...}``. Those lines are shown as
    ``[host stdout] ...`` so they stand apart from spacelink's own messages.
    """

    STREAMS = ("stdout", "stderr")

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        stream = getattr(record, "stream", None)
        if stream not in self.STREAMS:
            return message

        host = getattr(record, "host", None)
        prefix = f"[{host} {stream}]" if host else f"[{stream}]"
        return f"{prefix} {message}"
