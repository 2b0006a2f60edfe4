"""
Resolution of build parameters from explicit arguments, the environment and config files.
"""
import logging
import os
from typing import Dict, Iterable, List, Mapping, Optional

import yaml
from dotenv import dotenv_values

from ..errors import ConfigFileError, MissingRequiredParameter, UnknownParameter
from ..MODELS.build_config import BuildConfig, ParameterDeclaration, ValueSource

logger = logging.getLogger(__name__)


def load_config_file(path: str) -> Dict[str, str]:
    """
    Reads a parameter-defaults file.

    ``.yml``/``.yaml`` files must hold a mapping; anything else is read as
    a dotenv file.

    :param path: Path to the config file.
    :return: Parameter name to default value.
    """
    if path.endswith((".yml", ".yaml")):
        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f)
            except (yaml.YAMLError, UnicodeDecodeError) as e:
                raise ConfigFileError(f"Invalid YAML in config file {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigFileError(f"Config file {path} must contain a mapping")
        return {str(k): "" if v is None else str(v) for k, v in data.items()}

    if not os.path.exists(path):
        raise FileNotFoundError(path)
    try:
        values = dotenv_values(path, encoding='utf-8')
    except UnicodeDecodeError as e:
        raise ConfigFileError(f"Config file {path} is not valid UTF-8: {e}") from e
    return {k: v if v is not None else "" for k, v in values.items()}


class ConfigResolver:
    """
    Merges build parameter values from several sources into one BuildConfig.

    Precedence, highest first: explicit argument, environment variable,
    config-file value, declared default.
    """
    def __init__(self,
                 declarations: Iterable[ParameterDeclaration],
                 strict: bool = False,
                 env_prefix: str = ""):
        """
        :param declarations: The parameters the pipeline knows about.
        :param strict: Reject undeclared names in arguments and config files.
        :param env_prefix: Prefix prepended to a parameter name when looking it up in the environment.
        """
        self.declarations: Dict[str, ParameterDeclaration] = {d.name: d for d in declarations}
        self.strict = strict
        self.env_prefix = env_prefix

    def resolve(self,
                arguments: Optional[Mapping[str, str]] = None,
                environ: Optional[Mapping[str, str]] = None,
                config_file: Optional[str] = None,
                referenced: Iterable[str] = ()) -> BuildConfig:
        """
        Resolves every declared parameter.

        :param arguments: Explicit build arguments.
        :param environ: Environment mapping; defaults to ``os.environ``. Only read.
        :param config_file: Optional YAML or dotenv file with defaults.
        :param referenced: Names build steps need; each must end up with a value.
        :return: The resolved configuration.
        :raises UnknownParameter: In strict mode, for undeclared argument or file names.
        :raises MissingRequiredParameter: If a required or referenced name has no value.
        """
        arguments = dict(arguments or {})
        environ = os.environ if environ is None else environ
        file_values = load_config_file(config_file) if config_file else {}

        unknown = [n for n in list(arguments) + list(file_values) if n not in self.declarations]
        if unknown:
            if self.strict:
                raise UnknownParameter(unknown)
            logger.debug("Ignoring undeclared parameter(s): %s", ", ".join(sorted(set(unknown))))

        values: Dict[str, str] = {}
        sources: Dict[str, ValueSource] = {}
        missing: List[str] = []

        for name in sorted(self.declarations):
            decl = self.declarations[name]
            env_name = f"{self.env_prefix}{name}"
            if name in arguments:
                values[name], sources[name] = str(arguments[name]), ValueSource.ARGUMENT
            elif env_name in environ:
                values[name], sources[name] = environ[env_name], ValueSource.ENVIRONMENT
            elif name in file_values:
                values[name], sources[name] = file_values[name], ValueSource.CONFIG_FILE
            elif decl.default is not None:
                values[name], sources[name] = decl.default, ValueSource.DEFAULT
            elif decl.required:
                missing.append(name)

        missing.extend(n for n in referenced if n not in values)
        if missing:
            raise MissingRequiredParameter(missing)

        for name in sorted(values):
            logger.debug("Parameter %s resolved from %s", name, sources[name].value)
        return BuildConfig(values=values, sources=sources)
