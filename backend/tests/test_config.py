"""Tests for YAML configuration loading.

Covers:
* Defaults when no files exist
* settings / secrets file merge
* JWT_SECRET and KIDSLINK_SETTINGS environment overrides
* Validation of page sizes and image backend
"""
import pytest
import yaml
from pydantic import ValidationError

from kidslink.config import DEFAULT_JWT_SECRET, AppConfig, ChatSettings, ImageSettings, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("JWT_SECRET", "KIDSLINK_SETTINGS", "KIDSLINK_SECRETS"):
        monkeypatch.delenv(name, raising=False)


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestDefaults:
    def test_missing_files_give_defaults(self, tmp_path):
        config = load_config(tmp_path / "none.yaml", tmp_path / "none-secrets.yaml")

        assert config.server.port == 8000
        assert config.database.path == "kidslink.duckdb"
        assert config.auth.algorithm == "HS256"
        assert config.auth.system_user_ids == ["admin"]
        assert config.chat.default_page_size == 50
        assert config.images.backend == "local"
        assert config.secrets.jwt.secret_key == DEFAULT_JWT_SECRET

    def test_app_config_defaults(self):
        config = AppConfig()
        assert config.images.folder == "kidslink/messages"
        assert config.images.max_size_bytes == 10 * 1024 * 1024


class TestLoading:
    def test_settings_and_secrets_are_merged(self, tmp_path):
        settings = write_yaml(tmp_path / "kidslink.settings.yaml", {
            "server": {"port": 9100},
            "database": {"path": "/data/kidslink.duckdb"},
            "images": {"backend": "s3", "s3_bucket": "kidslink-images", "s3_region": "ap-southeast-1"},
            "logging": {"level": "debug"},
        })
        secrets = write_yaml(tmp_path / "kidslink.secrets.yaml", {
            "jwt": {"secret_key": "from-file"},
            "aws": {"access_key_id": "AKIA123", "secret_access_key": "shh"},
        })

        config = load_config(settings, secrets)

        assert config.server.port == 9100
        assert config.database.path == "/data/kidslink.duckdb"
        assert config.images.s3_bucket == "kidslink-images"
        assert config.logging.level == "debug"
        assert config.secrets.jwt.secret_key == "from-file"
        assert config.secrets.aws.access_key_id == "AKIA123"

    def test_jwt_secret_env_overrides_file(self, tmp_path, monkeypatch):
        secrets = write_yaml(tmp_path / "secrets.yaml", {"jwt": {"secret_key": "from-file"}})
        monkeypatch.setenv("JWT_SECRET", "from-env")

        config = load_config(tmp_path / "settings.yaml", secrets)

        assert config.secrets.jwt.secret_key == "from-env"

    def test_jwt_secret_env_without_secrets_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "from-env")
        config = load_config(tmp_path / "a.yaml", tmp_path / "b.yaml")
        assert config.secrets.jwt.secret_key == "from-env"

    def test_settings_path_from_env(self, tmp_path, monkeypatch):
        settings = write_yaml(tmp_path / "custom.yaml", {"chat": {"default_page_size": 25}})
        monkeypatch.setenv("KIDSLINK_SETTINGS", str(settings))
        monkeypatch.setenv("KIDSLINK_SECRETS", str(tmp_path / "missing.yaml"))

        assert load_config().chat.default_page_size == 25

    def test_empty_yaml_file(self, tmp_path):
        settings = tmp_path / "empty.yaml"
        settings.write_text("", encoding="utf-8")
        assert load_config(settings, tmp_path / "missing.yaml").server.host == "0.0.0.0"


class TestValidation:
    def test_page_sizes_must_be_positive(self):
        with pytest.raises(ValidationError):
            ChatSettings(max_page_size=0)

    def test_unknown_image_backend(self):
        with pytest.raises(ValidationError):
            ImageSettings(backend="cloudinary")
