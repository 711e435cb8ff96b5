import pytest

from config.validation import validate_and_exit, validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "a" * 64,
    "DATABASE_URL": "postgresql://zone:zone@db/zone_admin",
    "NAVIO_API_TOKEN": "token",
    "NAVIO_AI_API_KEY": "key",
}


@pytest.fixture
def production_env(monkeypatch):
    for key, value in PRODUCTION_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("NAVIO_ENABLED", raising=False)
    monkeypatch.delenv("NAVIO_CLASSIFIER", raising=False)
    return monkeypatch


def test_non_production_environments_skip_validation(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    assert validate_environment("development") == (True, [])
    assert validate_environment("testing") == (True, [])


def test_complete_production_environment_is_valid(production_env):
    assert validate_environment("production") == (True, [])


def test_default_secret_key_is_rejected(production_env):
    production_env.setenv("SECRET_KEY", "your-secret-key")

    is_valid, errors = validate_environment("production")

    assert not is_valid
    assert "SECRET_KEY" in errors[0]


def test_navio_credentials_are_required_when_enabled(production_env):
    production_env.delenv("NAVIO_API_TOKEN")
    production_env.delenv("NAVIO_AI_API_KEY")

    is_valid, errors = validate_environment("production")

    assert not is_valid
    assert any("NAVIO_API_TOKEN" in error for error in errors)
    assert any("NAVIO_AI_API_KEY" in error for error in errors)


def test_hint_classifier_and_disabled_pipeline_need_no_credentials(production_env):
    production_env.delenv("NAVIO_API_TOKEN")
    production_env.delenv("NAVIO_AI_API_KEY")
    production_env.setenv("NAVIO_ENABLED", "false")
    production_env.setenv("NAVIO_CLASSIFIER", "hints")

    assert validate_environment("production") == (True, [])


def test_validate_and_exit_exits_on_errors(production_env, capsys):
    production_env.delenv("DATABASE_URL")

    with pytest.raises(SystemExit) as excinfo:
        validate_and_exit("production")

    assert excinfo.value.code == 1
    assert "DATABASE_URL" in capsys.readouterr().err
