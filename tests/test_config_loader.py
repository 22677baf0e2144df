from pathlib import Path

import pytest

from shared.config.config_loader import MainConfig, config_from_dict, load_config

ROOT = Path(__file__).resolve().parents[1]


def test_load_example_config():
    cfg_path = ROOT / "config" / "backtest.yml"
    assert cfg_path.exists(), "示例配置缺失"

    cfg = load_config(cfg_path, load_env=False)
    assert isinstance(cfg, MainConfig)
    assert cfg.symbol == "BTCUSDT"
    assert cfg.engine.initial_balance == 10000
    assert cfg.engine.use_tp_levels is False
    assert cfg.strategy.type == "enhanced_dca"
    # strategy 下的扁平字段被收进 params
    assert cfg.strategy.params["dynamic_tp"] == "volatility_adaptive"
    assert cfg.batch.engine_params["tp_percent"] == [0.015, 0.02, 0.03]
    assert cfg.walkforward.n_folds == 4


def test_env_placeholders_expanded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    cfg_path = tmp_path / "cfg.yml"
    cfg_path.write_text("symbol: ${DCA_SYMBOL}\ndata:\n  path: ${DCA_DATA}\n", encoding="utf-8")
    monkeypatch.setenv("DCA_SYMBOL", "ETHUSDT")
    monkeypatch.setenv("DCA_DATA", "data/eth.csv")

    cfg = load_config(cfg_path, load_env=False)
    assert cfg.symbol == "ETHUSDT"
    assert cfg.data.path == "data/eth.csv"


def test_missing_env_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    cfg_path = tmp_path / "cfg.yml"
    cfg_path.write_text("symbol: ${DCA_MISSING_VAR}\n", encoding="utf-8")
    monkeypatch.delenv("DCA_MISSING_VAR", raising=False)

    with pytest.raises(ValueError) as exc:
        load_config(cfg_path, load_env=False)
    assert "Missing environment variable" in str(exc.value)


def test_dotenv_file_is_loaded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("DCA_FROM_DOTENV", raising=False)
    (tmp_path / ".env").write_text("DCA_FROM_DOTENV=SOLUSDT\n", encoding="utf-8")
    cfg_path = tmp_path / "cfg.yml"
    cfg_path.write_text("symbol: ${DCA_FROM_DOTENV}\n", encoding="utf-8")

    cfg = load_config(cfg_path)
    assert cfg.symbol == "SOLUSDT"


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yml")


def test_unknown_key_suggests_fix():
    with pytest.raises(ValueError) as exc:
        config_from_dict({"engine": {"tp_percnt": 0.02}})
    assert "config.engine contains unknown keys" in str(exc.value)
    assert "did you mean 'tp_percent'" in str(exc.value)


def test_inconsistent_engine_config_rejected():
    with pytest.raises(ValueError) as exc:
        config_from_dict({"engine": {"use_tp_levels": True, "tp_percent": 0}})
    assert "Invalid config" in str(exc.value)


def test_defaults_when_empty():
    cfg = config_from_dict({})
    assert cfg.mode == "backtest"
    assert cfg.engine.tp_percent == 0.02
    assert cfg.strategy.params == {}
