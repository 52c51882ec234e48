from .buffers import (
    EventBuffer,
    LineBuffer,
    StreamBuffer,
    StreamProcessor,
    filter_stream_chunks,
    iter_line_records,
    merge_stream_chunks,
    transform_stream_chunks,
)
from .parsers import (
    SSEEvent,
    parse_chunked_text,
    parse_framed_events,
    parse_line_records,
    split_framed_events,
)
from .retry import (
    DEFAULT_RETRY_POLICY,
    RetryHandler,
    RetryPolicy,
    retry_operation,
    retry_stream,
)
from .transport import (
    HttpTransport,
    TimeoutController,
    create_timeout_controller,
    run_with_timeout,
)

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "EventBuffer",
    "HttpTransport",
    "LineBuffer",
    "RetryHandler",
    "RetryPolicy",
    "SSEEvent",
    "StreamBuffer",
    "StreamProcessor",
    "TimeoutController",
    "create_timeout_controller",
    "filter_stream_chunks",
    "iter_line_records",
    "merge_stream_chunks",
    "parse_chunked_text",
    "parse_framed_events",
    "parse_line_records",
    "retry_operation",
    "retry_stream",
    "run_with_timeout",
    "split_framed_events",
    "transform_stream_chunks",
]
