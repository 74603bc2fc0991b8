import pytest

from config import Settings, split_list


@pytest.fixture
def clean_env(monkeypatch):
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        settings = Settings(_env_file=None)
        assert settings.api_port == 8080
        assert settings.db_path == "imageboard.db"
        assert settings.storage_timeout_seconds == 10
        assert settings.archive_after_days == 7
        assert settings.archive_delete_days == 30
        assert settings.default_max_image_size == 5 * 1024 * 1024
        assert settings.s3_endpoint_url is None
        assert settings.cors_allow_credentials is False

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("API_PORT", "9090")
        clean_env.setenv("ARCHIVE_DELETE_DAYS", "14")
        clean_env.setenv("STORAGE_TYPE", "s3")
        clean_env.setenv("S3_ENDPOINT_URL", "http://minio:9000")
        clean_env.setenv("CORS_ALLOW_CREDENTIALS", "yes")

        settings = Settings(_env_file=None)
        assert settings.api_port == 9090
        assert settings.archive_delete_days == 14
        assert settings.storage_type == "s3"
        assert settings.s3_endpoint_url == "http://minio:9000"
        assert settings.cors_allow_credentials is True

    @pytest.mark.parametrize("value", ["seven", "", "7.5"])
    def test_unparsable_number_falls_back_to_default(self, clean_env, value):
        clean_env.setenv("ARCHIVE_AFTER_DAYS", value)
        assert Settings(_env_file=None).archive_after_days == 7

    def test_empty_endpoint_is_none(self, clean_env):
        clean_env.setenv("S3_ENDPOINT_URL", "")
        assert Settings(_env_file=None).s3_endpoint_url is None

    def test_split_list(self):
        assert split_list("GET, POST,,DELETE ") == ["GET", "POST", "DELETE"]
