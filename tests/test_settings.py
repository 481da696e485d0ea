from fulfillment.settings import Settings, load_settings, resolve_env_file


class TestSettings:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("FULFILLMENT_ENV_FILE", raising=False)
        settings = load_settings()

        assert settings.database_url == ""
        assert settings.reservation_timeout_minutes == 15
        assert settings.reservation_cleanup_interval_minutes == 5
        assert settings.stale_reservation_threshold_minutes == 120
        assert settings.return_window_days == 30
        assert settings.payment_sandbox is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FULFILLMENT_RETURN_WINDOW_DAYS", "14")
        monkeypatch.setenv("FULFILLMENT_PAYMENT_SANDBOX", "false")

        settings = Settings()

        assert settings.return_window_days == 14
        assert settings.payment_sandbox is False

    def test_env_file(self, monkeypatch, tmp_path):
        env_file = tmp_path / "fulfillment.env"
        env_file.write_text("FULFILLMENT_RESERVATION_TIMEOUT_MINUTES=30\n", encoding="utf-8")
        monkeypatch.setenv("FULFILLMENT_ENV_FILE", str(env_file))

        assert resolve_env_file() == env_file
        assert load_settings().reservation_timeout_minutes == 30

    def test_default_env_file_location(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FULFILLMENT_ENV_FILE", raising=False)
        monkeypatch.chdir(tmp_path)
        assert resolve_env_file() is None

        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "fulfillment.env").write_text("", encoding="utf-8")
        assert resolve_env_file() == tmp_path / "config" / "fulfillment.env"
