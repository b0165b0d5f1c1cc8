"""
Invoice Service Deployment Configuration

Loads the deployer YAML configuration over built-in defaults and sets up
logging for command-line runs.
"""

import copy
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError
from .models import Environment

logger = logging.getLogger('invoice_deploy.config')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_CONFIG_PATH = os.environ.get('DEPLOY_CONFIG', 'devops/deploy.yaml')


def get_default_config() -> Dict[str, Any]:
    """Get default configuration"""
    return {
        'project': {
            'name': 'Invoice Service',
            'root': '.'
        },
        'environments': {
            'staging': {
                'compose_file': 'devops/staging/docker-compose.yaml',
                'history_database': 'devops/staging/.deployments.db'
            },
            'prod': {
                'compose_file': 'devops/prod/docker-compose.yaml',
                'state_file': 'devops/prod/.active',
                'history_database': 'devops/prod/.deployments.db'
            }
        },
        'ui': {
            'env_file': 'ui/.env',
            'address_key': 'VITE_SERVER_ADDRESS',
            'backend_port': 5000
        },
        'services': {
            'backend': 'backend',
            'webui': 'webui',
            'router': 'router'
        },
        'router': {
            'color_variable': 'ACTIVE_VERSION',
            'grace_seconds': 3
        },
        'health': {
            'grace_seconds': 10,
            'stabilize_seconds': 5,
            'retries': 1,
            'retry_interval_seconds': 5,
            'timeout_seconds': 30,
            'probes': [
                {'type': 'compose'}
            ]
        },
        'compose': {
            'command': ['docker', 'compose'],
            'timeout_seconds': 1800
        },
        'history': {
            'enabled': True
        },
        'logging': {
            'level': 'INFO',
            'file': None
        }
    }


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file"""
    defaults = get_default_config()
    path = Path(config_path or DEFAULT_CONFIG_PATH)

    try:
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file {path} not found, using defaults")
        return defaults
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config: {e}")
        return defaults

    if not isinstance(loaded, dict):
        logger.error(f"Config file {path} is not a mapping, using defaults")
        return defaults

    return _merge(defaults, loaded)


@dataclass
class EnvironmentSettings:
    """Resolved paths and knobs for one environment"""
    environment: Environment
    root: Path
    compose_file: Path
    state_file: Optional[Path]
    history_database: Optional[Path]
    ui_env_file: Path
    address_key: str
    backend_port: int
    backend_service: str
    webui_service: str
    router_service: str
    router_color_variable: str
    router_grace_seconds: float
    stabilize_seconds: float
    compose_command: list
    compose_timeout_seconds: float

    @property
    def env_dir(self) -> Path:
        return self.compose_file.parent


def _resolve(root: Path, value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    path = Path(value)
    return path if path.is_absolute() else root / path


def environment_settings(config: Dict[str, Any], environment: Environment) -> EnvironmentSettings:
    """Resolve the settings of one environment from the merged config"""
    env_config = config.get('environments', {}).get(environment.value)
    if env_config is None:
        raise ConfigurationError(f"No configuration for environment '{environment.value}'")

    root = Path(config['project'].get('root') or '.')
    compose_file = _resolve(root, env_config.get('compose_file'))
    if compose_file is None:
        raise ConfigurationError(f"No compose file configured for '{environment.value}'")

    state_file = _resolve(root, env_config.get('state_file'))
    if environment == Environment.PRODUCTION and state_file is None:
        state_file = compose_file.parent / '.active'

    history_database = None
    if config.get('history', {}).get('enabled', True):
        history_database = _resolve(root, env_config.get('history_database'))

    command = config['compose'].get('command') or ['docker', 'compose']
    if isinstance(command, str):
        command = command.split()

    return EnvironmentSettings(
        environment=environment,
        root=root,
        compose_file=compose_file,
        state_file=state_file,
        history_database=history_database,
        ui_env_file=_resolve(root, config['ui']['env_file']),
        address_key=config['ui']['address_key'],
        backend_port=int(config['ui']['backend_port']),
        backend_service=config['services']['backend'],
        webui_service=config['services']['webui'],
        router_service=config['services']['router'],
        router_color_variable=config['router']['color_variable'],
        router_grace_seconds=float(config['router']['grace_seconds']),
        stabilize_seconds=float(config['health']['stabilize_seconds']),
        compose_command=list(command),
        compose_timeout_seconds=float(config['compose']['timeout_seconds'])
    )


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None):
    """Configure root logging for command-line runs"""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
