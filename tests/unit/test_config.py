"""
Unit tests for configuration module.
"""

import os
from unittest.mock import patch

import pytest


@pytest.mark.unit
class TestSettings:
    """Tests for Settings class."""

    def test_settings_loads_from_env(self, mock_settings):
        """Settings should load values from environment variables."""
        assert mock_settings.embedding_provider == "huggingface"
        assert mock_settings.embedding_model == "sentence-transformers/all-MiniLM-L6-v2"
        assert mock_settings.chunk_target_size == 800
        assert mock_settings.chunk_overlap == 100
        assert mock_settings.enable_tracing is False

    def test_settings_defaults(self):
        """Settings should work with no environment at all."""
        with patch.dict(os.environ, {}, clear=True):
            from mnemosyne.config import Settings

            settings = Settings(_env_file=None)

        assert settings.vector_store_backend == "faiss"
        assert settings.retrieval_top_k == 5
        assert settings.similarity_threshold == 0.7
        assert settings.kdf_iterations == 480000
        assert settings.hf_api_key is None

    def test_settings_chunk_overlap_validation(self):
        """Chunk overlap must be less than the minimum chunk size."""
        with patch.dict(
            os.environ,
            {"CHUNK_MIN_SIZE": "100", "CHUNK_OVERLAP": "150"},
            clear=True,
        ):
            from mnemosyne.config import Settings

            with pytest.raises(Exception):  # ValidationError
                Settings(_env_file=None)

    def test_settings_chunk_size_ordering(self):
        """Target size may not be below the minimum size."""
        with patch.dict(
            os.environ,
            {"CHUNK_MIN_SIZE": "500", "CHUNK_TARGET_SIZE": "400"},
            clear=True,
        ):
            from mnemosyne.config import Settings

            with pytest.raises(Exception):  # ValidationError
                Settings(_env_file=None)

    def test_settings_max_size_ordering(self):
        """Max size may not be below the target size."""
        with patch.dict(
            os.environ,
            {"CHUNK_TARGET_SIZE": "900", "CHUNK_MAX_SIZE": "850"},
            clear=True,
        ):
            from mnemosyne.config import Settings

            with pytest.raises(Exception):  # ValidationError
                Settings(_env_file=None)

    def test_settings_top_k_bounds(self):
        """Retrieval top_k must stay within 1..20."""
        with patch.dict(os.environ, {"RETRIEVAL_TOP_K": "21"}, clear=True):
            from mnemosyne.config import Settings

            with pytest.raises(Exception):  # ValidationError
                Settings(_env_file=None)

    def test_settings_hf_api_key_is_secret(self):
        """API key should be stored as SecretStr."""
        with patch.dict(os.environ, {"HF_API_KEY": "hf-secret-value"}, clear=True):
            from mnemosyne.config import Settings

            settings = Settings(_env_file=None)

        assert "hf-secret-value" not in str(settings.hf_api_key)
        assert settings.hf_api_key_value == "hf-secret-value"

    def test_settings_paths_are_resolved(self, mock_settings):
        """Path settings should be resolved to absolute paths."""
        assert mock_settings.index_path.is_absolute()
        assert mock_settings.settings_path.is_absolute()
        assert mock_settings.vault_path.is_absolute()

    def test_get_settings_is_cached(self):
        """get_settings should return cached instance."""
        from mnemosyne.config import get_settings

        assert get_settings() is get_settings()
