# =============================================================================
# Unit Tests — Settings
# =============================================================================

from legal_qa.config import Settings, get_settings, settings


class TestSettings:
    def test_module_settings_is_the_cached_instance(self):
        assert get_settings() is settings
        assert get_settings() is get_settings()

    def test_similarity_defaults(self):
        defaults = Settings(_env_file=None)
        assert defaults.context_similarity_threshold == 0.8
        assert defaults.similar_responses_threshold == 0.7
        assert defaults.cluster_similarity_threshold == 0.85

    def test_allowed_types_are_normalised(self):
        custom = Settings(
            _env_file=None,
            allowed_file_types=" PDF, txt ,,",
            allowed_audio_types="Audio/MPEG",
        )
        assert custom.allowed_file_extensions == {"pdf", "txt"}
        assert custom.allowed_audio_mimetypes == {"audio/mpeg"}
