"""Tests for RlogConfig and config file loading."""

import json

import pytest

from rlognorm.config import RlogConfig, load_config


class TestRlogConfig:

    def test_defaults(self):
        config = RlogConfig()
        assert config.fit_type == "parametric"
        assert config.min_disp == 1e-8
        assert config.upper_quantile == 0.05
        assert config.max_iter == 100
        assert config.n_jobs == 1
        assert config.use_optim is True

    def test_frozen(self):
        config = RlogConfig()
        with pytest.raises(AttributeError):
            config.max_iter = 5

    @pytest.mark.parametrize("field,value", [
        ("fit_type", "spline"),
        ("min_disp", 0.0),
        ("upper_quantile", 1.5),
        ("max_iter", 0),
        ("tol", -1.0),
        ("n_jobs", 0),
        ("chunk_size", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValueError, match="Invalid rlog configuration"):
            RlogConfig(**{field: value})

    def test_from_dict_unwraps_section(self):
        config = RlogConfig.from_dict({"rlog": {"fit_type": "local", "n_jobs": 2}})
        assert config.fit_type == "local"
        assert config.n_jobs == 2

    def test_from_dict_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown rlog configuration keys"):
            RlogConfig.from_dict({"fittype": "local"})

    def test_merged(self):
        base = RlogConfig(fit_type="local")
        merged = base.merged(max_iter=20, n_jobs=None)
        assert merged.max_iter == 20
        assert merged.n_jobs == 1
        assert merged.fit_type == "local"
        assert base.max_iter == 100

    def test_merged_validates(self):
        with pytest.raises(ValueError):
            RlogConfig().merged(upper_quantile=0.0)

    def test_to_dict_roundtrip(self):
        config = RlogConfig(fit_type="mean", chunk_size=10)
        assert RlogConfig.from_dict(config.to_dict()) == config


class TestLoadConfig:

    def test_yaml(self, tmp_path):
        path = tmp_path / "rlog.yaml"
        path.write_text("rlog:\n  fit_type: local\n  max_iter: 50\n")
        config = RlogConfig.from_file(path)
        assert config.fit_type == "local"
        assert config.max_iter == 50

    def test_json(self, tmp_path):
        path = tmp_path / "rlog.json"
        path.write_text(json.dumps({"upper_quantile": 0.1}))
        assert RlogConfig.from_file(path).upper_quantile == 0.1

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == {}
        assert RlogConfig.from_file(path) == RlogConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "rlog.toml"
        path.write_text("fit_type = 'local'\n")
        with pytest.raises(ValueError, match="Unsupported config format"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("rlog: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ValueError, match="Invalid JSON"):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="dictionary"):
            load_config(path)
