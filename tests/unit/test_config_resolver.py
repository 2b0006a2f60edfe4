"""
Unit tests for build parameter resolution.
"""
import pytest

from dockship.errors import ConfigFileError, MissingRequiredParameter, UnknownParameter
from dockship.MANAGERS.config_resolver import ConfigResolver, load_config_file
from dockship.MODELS.build_config import ParameterDeclaration, ValueSource


def declarations():
    return [
        ParameterDeclaration(name="VERSION", required=True),
        ParameterDeclaration(name="PORT", default="8080"),
        ParameterDeclaration(name="DEBUG"),
    ]


class TestConfigResolver:

    def test_missing_required_parameter(self):
        resolver = ConfigResolver([ParameterDeclaration(name="VERSION", required=True)])
        with pytest.raises(MissingRequiredParameter) as exc:
            resolver.resolve(arguments={}, environ={})
        assert exc.value.names == ["VERSION"]
        assert exc.value.stage == "resolving"

    def test_precedence(self, tmp_path):
        config_file = tmp_path / "defaults.yml"
        config_file.write_text("VERSION: from-file\nPORT: 9000\nDEBUG: 'yes'\n")
        resolver = ConfigResolver(declarations())

        config = resolver.resolve(
            arguments={"VERSION": "from-arg"},
            environ={"VERSION": "from-env", "PORT": "7000"},
            config_file=str(config_file),
        )

        assert config["VERSION"] == "from-arg"
        assert config.sources["VERSION"] is ValueSource.ARGUMENT
        assert config["PORT"] == "7000"
        assert config.sources["PORT"] is ValueSource.ENVIRONMENT
        assert config["DEBUG"] == "yes"
        assert config.sources["DEBUG"] is ValueSource.CONFIG_FILE

    def test_default_used_last(self):
        config = ConfigResolver(declarations()).resolve(arguments={"VERSION": "1"}, environ={})
        assert config["PORT"] == "8080"
        assert config.sources["PORT"] is ValueSource.DEFAULT
        assert "DEBUG" not in config

    def test_resolution_is_deterministic(self):
        resolver = ConfigResolver(declarations())
        args = {"VERSION": "1.2.3"}
        env = {"PORT": "1234"}
        first = resolver.resolve(arguments=args, environ=env)
        second = resolver.resolve(arguments=args, environ=env)
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_environment_not_mutated(self):
        env = {"VERSION": "2"}
        ConfigResolver(declarations()).resolve(environ=env)
        assert env == {"VERSION": "2"}

    def test_undeclared_environment_ignored(self):
        config = ConfigResolver(declarations()).resolve(environ={"VERSION": "1", "HOME": "/root"})
        assert "HOME" not in config

    def test_env_prefix(self):
        resolver = ConfigResolver(declarations(), env_prefix="APP_")
        config = resolver.resolve(environ={"APP_VERSION": "3", "VERSION": "ignored"})
        assert config["VERSION"] == "3"

    def test_referenced_names_must_resolve(self):
        resolver = ConfigResolver(declarations())
        with pytest.raises(MissingRequiredParameter) as exc:
            resolver.resolve(arguments={"VERSION": "1"}, environ={}, referenced=["DEBUG"])
        assert exc.value.names == ["DEBUG"]

    def test_unknown_argument_lenient(self):
        config = ConfigResolver(declarations()).resolve(arguments={"VERSION": "1", "EXTRA": "x"}, environ={})
        assert "EXTRA" not in config

    def test_unknown_argument_strict(self):
        resolver = ConfigResolver(declarations(), strict=True)
        with pytest.raises(UnknownParameter) as exc:
            resolver.resolve(arguments={"VERSION": "1", "EXTRA": "x"}, environ={})
        assert exc.value.names == ["EXTRA"]

    def test_subset_digest_tracks_only_read_names(self):
        resolver = ConfigResolver(declarations())
        a = resolver.resolve(arguments={"VERSION": "1", "DEBUG": "a"}, environ={})
        b = resolver.resolve(arguments={"VERSION": "1", "DEBUG": "b"}, environ={})
        assert a.subset_digest(["VERSION"]) == b.subset_digest(["VERSION"])
        assert a.subset_digest(["DEBUG"]) != b.subset_digest(["DEBUG"])


class TestConfigFiles:

    def test_dotenv_file(self, tmp_path):
        env_file = tmp_path / "build.env"
        env_file.write_text("# defaults\nVERSION=4.0\nPORT=\"5000\"\n")
        assert load_config_file(str(env_file)) == {"VERSION": "4.0", "PORT": "5000"}

    def test_yaml_must_be_mapping(self, tmp_path):
        config_file = tmp_path / "defaults.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigFileError):
            load_config_file(str(config_file))

    def test_empty_yaml(self, tmp_path):
        config_file = tmp_path / "defaults.yml"
        config_file.write_text("")
        assert load_config_file(str(config_file)) == {}

    def test_missing_dotenv_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(tmp_path / "missing.env"))

    def test_strict_rejects_unknown_file_key(self, tmp_path):
        config_file = tmp_path / "defaults.yml"
        config_file.write_text("VERSION: 1\nOTHER: 2\n")
        resolver = ConfigResolver(declarations(), strict=True)
        with pytest.raises(UnknownParameter):
            resolver.resolve(environ={}, config_file=str(config_file))

    def test_non_utf8_dotenv_file(self, tmp_path):
        env_file = tmp_path / "build.env"
        env_file.write_bytes(b"VERSION=\xff\xfe\n")
        with pytest.raises(ConfigFileError):
            load_config_file(str(env_file))

    def test_non_utf8_yaml_file(self, tmp_path):
        config_file = tmp_path / "defaults.yml"
        config_file.write_bytes(b"VERSION: \xff\xfe\n")
        with pytest.raises(ConfigFileError):
            load_config_file(str(config_file))
