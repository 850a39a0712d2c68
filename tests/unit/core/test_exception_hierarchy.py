"""Tests for the typed exception hierarchy."""

import pytest

from ctx_index.core.exceptions import (
    ConfigError,
    CtxIndexError,
    DatabaseError,
    DimensionMismatchError,
    EmbeddingError,
    EmbeddingTimeoutError,
    IndexingCancelledError,
    IndexingError,
    IndexingInProgressError,
    InputValidationError,
    ModelMismatchError,
    ProviderError,
    SearchError,
)


class TestExceptionHierarchy:
    """Verify the class hierarchy defined in core/exceptions.py."""

    @pytest.mark.parametrize(
        "error_cls",
        [
            InputValidationError,
            ConfigError,
            EmbeddingError,
            SearchError,
            DatabaseError,
            IndexingError,
        ],
    )
    def test_layers_inherit_from_base(self, error_cls):
        assert issubclass(error_cls, CtxIndexError)

    def test_mismatch_errors_are_config_errors(self):
        assert issubclass(DimensionMismatchError, ConfigError)
        assert issubclass(ModelMismatchError, ConfigError)

    def test_timeout_is_not_a_provider_error(self):
        """Timeouts and provider failures are distinct kinds."""
        assert issubclass(EmbeddingTimeoutError, EmbeddingError)
        assert issubclass(ProviderError, EmbeddingError)
        assert not issubclass(EmbeddingTimeoutError, ProviderError)
        assert not issubclass(ProviderError, EmbeddingTimeoutError)

    def test_indexing_subclasses(self):
        assert issubclass(IndexingInProgressError, IndexingError)
        assert issubclass(IndexingCancelledError, IndexingError)

    def test_indexing_error_does_not_shadow_builtin(self):
        assert IndexingError is not IndexError
        assert not issubclass(IndexingError, IndexError)


class TestErrorContext:
    def test_context_defaults_to_empty_dict(self):
        err = ProviderError("boom")
        assert err.context == {}
        assert str(err) == "boom"

    def test_context_is_kept(self):
        err = ProviderError("boom", {"provider": "ollama", "batch_start": 0})
        assert err.context["provider"] == "ollama"
        assert err.context["batch_start"] == 0

    def test_cancelled_has_default_message(self):
        err = IndexingCancelledError()
        assert str(err) == "Indexing cancelled"

        err = IndexingCancelledError(context={"completed": 4})
        assert err.context == {"completed": 4}

    def test_base_error_exported_from_package_root(self):
        import ctx_index

        assert ctx_index.CtxIndexError is CtxIndexError
