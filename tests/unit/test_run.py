import argparse
import sys

from run import export_overrides, parse_arguments
from wedged_risk.config import Settings


class TestCommandLine:
    def test_flags_parsed(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["run.py", "--env", "production", "--log-level", "DEBUG", "-p", "9000"])

        args = parse_arguments(Settings(_env_file=None))

        assert args.env == "production"
        assert args.log_level == "DEBUG"
        assert args.port == 9000

    def test_overrides_reach_factory_settings(self, monkeypatch):
        monkeypatch.setenv("ENV", "test")
        monkeypatch.setenv("LOG_LEVEL", "ERROR")

        export_overrides(argparse.Namespace(env="production", log_level="DEBUG"))
        settings = Settings(_env_file=None)

        assert settings.ENV == "production"
        assert settings.LOG_LEVEL == "DEBUG"
