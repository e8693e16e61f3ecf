"""Logging filters for stream routing."""

import logging


class StreamRoutingFilter(logging.Filter):
    """Route records to a handler by their ``stream`` tag.

    Records tagged ``stream="stdout"`` go to the stdout handler. Everything
    else, including untagged records, goes to stderr so that command output
    piped to other programs carries only what was asked for.

    Parameters
    ----------
    stream : str
        Stream this filter admits, either ``"stdout"`` or ``"stderr"``
    """

    def __init__(self, stream: str) -> None:
        super().__init__()
        if stream not in ("stdout", "stderr"):
            raise ValueError(f"stream must be 'stdout' or 'stderr', got {stream!r}")
        self.stream = stream

    def filter(self, record: logging.LogRecord) -> bool:
        record_stream = getattr(record, "stream", None)
        if self.stream == "stdout":
            return record_stream == "stdout"
        return record_stream != "stdout"
