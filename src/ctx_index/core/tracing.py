"""Tracing for embedding, search and indexing operations.

``create_tracer`` returns a ``NoopTracer`` unless Langfuse credentials are
configured, in which case spans are sent to Langfuse. Callers always hold a
tracer and never check which one they got.
"""

from typing import Any, Protocol

from loguru import logger


class Span(Protocol):
    def update(self, **data: Any) -> "Span": ...

    def end(self) -> None: ...


class Tracer(Protocol):
    is_remote: bool

    def trace(
        self,
        name: str,
        input: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> Span: ...

    def flush(self) -> None: ...

    def shutdown(self) -> None: ...


class _NoopSpan:
    __slots__ = ()

    def update(self, **data: Any) -> "_NoopSpan":
        return self

    def end(self) -> None:
        pass


NOOP_SPAN = _NoopSpan()


class NoopTracer:
    """Tracer whose spans do nothing. Every trace returns the same span."""

    is_remote = False

    def trace(
        self,
        name: str,
        input: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> _NoopSpan:
        return NOOP_SPAN

    def flush(self) -> None:
        pass

    def shutdown(self) -> None:
        pass


class _LangfuseSpan:
    def __init__(self, span: Any) -> None:
        self._span = span
        self._ended = False

    def update(self, **data: Any) -> "_LangfuseSpan":
        self._span.update(**data)
        return self

    def end(self) -> None:
        if not self._ended:
            self._ended = True
            self._span.end()


class LangfuseTracer:
    """Sends spans to Langfuse.

    Requires the ``langfuse`` extra (``pip install ctx-index[langfuse]``).
    """

    is_remote = True

    def __init__(
        self,
        public_key: str,
        secret_key: str,
        host: str = "https://cloud.langfuse.com",
        client: Any = None,
    ) -> None:
        if client is None:
            from langfuse import Langfuse

            client = Langfuse(public_key=public_key, secret_key=secret_key, host=host)
        self._client = client
        logger.info(f"Langfuse tracing enabled ({host})")

    def trace(
        self,
        name: str,
        input: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> _LangfuseSpan:
        span = self._client.start_span(name=name, input=input, metadata=metadata)
        return _LangfuseSpan(span)

    def flush(self) -> None:
        self._client.flush()

    def shutdown(self) -> None:
        self._client.shutdown()


def create_tracer(settings: Any) -> Tracer:
    """Pick a tracer from ``ObservabilitySettings``.

    Returns ``NoopTracer`` when tracing is disabled or either Langfuse key is
    missing, ``LangfuseTracer`` otherwise.
    """
    if settings is None or not settings.enabled or not settings.has_credentials:
        logger.debug("Tracing disabled (no Langfuse credentials)")
        return NoopTracer()
    return LangfuseTracer(
        public_key=settings.public_key,
        secret_key=settings.secret_key,
        host=settings.host,
    )
