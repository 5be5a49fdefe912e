"""
Settings loader

Values come from built-in defaults, then config/settings.yaml (whitelisted
top-level sections only), then environment variables. API keys are only ever
read from the environment.
"""

import copy
import os
import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv

from menu_intel.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'taste_graph': {
        'base_url': 'https://hackathon.api.qloo.com',
        'rate': 5,
        'burst': 1,
        'max_in_flight': 5,
        'max_retries': 3,
        'backoff_base': 0.5,
        'backoff_max': 8.0,
        'timeout': 30,
        'search_radius': 10,
        'search_limit': 10,
        'similar_count': 10,
    },
    'providers': {
        'order': ['anthropic', 'openai', 'google'],
        'anthropic': {
            'model': 'claude-sonnet-4-20250514',
            'max_tokens': 2000,
            'temperature': 0.7,
            'rate': 2,
            'timeout': 60,
        },
        'openai': {
            'model': 'gpt-4-turbo',
            'base_url': 'https://api.openai.com/v1',
            'max_tokens': 2000,
            'temperature': 0.7,
            'rate': 2,
            'timeout': 60,
        },
        'google': {
            'model': 'gemini-pro',
            'base_url': 'https://generativelanguage.googleapis.com/v1beta',
            'max_tokens': 2000,
            'temperature': 0.7,
            'rate': 2,
            'timeout': 60,
        },
    },
    'pipeline': {
        'concurrency': 5,
        'deadline': None,
        'min_rating': 4.0,
        'suggestion_count': 5,
        'trending_dish_limit': 10,
    },
    'prompts': {
        'version': '1.0',
        'directory': 'config/prompts',
    },
    'scoring_policy': 'config/scoring.yaml',
    'storage': {
        'backend': 'memory',
        'table': 'menu_intel_records',
    },
    'run_log': 'output/logs/pipeline_log.json',
}

SAFE_KEYS = ['taste_graph', 'providers', 'pipeline', 'prompts', 'scoring_policy', 'storage', 'run_log']

PROVIDER_KEY_ENV = {
    'anthropic': 'ANTHROPIC_API_KEY',
    'openai': 'OPENAI_API_KEY',
    'google': 'GOOGLE_API_KEY',
}


def _merge(base: Dict, override: Dict) -> Dict:
    """Recursive dict merge; override wins on leaf values"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(config_file: str = 'config/settings.yaml', env_file: Optional[str] = None) -> Dict:
    """Load pipeline settings"""
    load_dotenv(env_file)

    settings = copy.deepcopy(DEFAULT_SETTINGS)
    config_path = Path(config_file)

    if config_path.exists():
        with open(config_path, 'r') as f:
            file_config = yaml.safe_load(f) or {}

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"{config_file} must contain a mapping")

        for key in SAFE_KEYS:
            if key in file_config:
                value = file_config[key]
                if isinstance(value, dict) and isinstance(settings.get(key), dict):
                    settings[key] = _merge(settings[key], value)
                else:
                    settings[key] = value

        ignored = set(file_config) - set(SAFE_KEYS)
        if ignored:
            logger.warning(f"Ignoring unknown settings sections: {sorted(ignored)}")
    else:
        logger.debug(f"{config_file} not found, using defaults")

    _apply_env(settings)
    return settings


def _apply_env(settings: Dict):
    """Environment overrides and secrets"""
    taste_graph = settings['taste_graph']
    taste_graph['api_key'] = os.getenv('QLOO_API_KEY', '')
    if os.getenv('QLOO_API_URL'):
        taste_graph['base_url'] = os.getenv('QLOO_API_URL')

    providers = settings['providers']
    if os.getenv('LLM_PROVIDERS'):
        providers['order'] = parse_provider_order(os.getenv('LLM_PROVIDERS'))

    for name, env_var in PROVIDER_KEY_ENV.items():
        providers.setdefault(name, {})['api_key'] = os.getenv(env_var, '')

    if os.getenv('MENU_INTEL_STORAGE'):
        settings['storage']['backend'] = os.getenv('MENU_INTEL_STORAGE')


def parse_provider_order(value: str) -> List[str]:
    """'anthropic, openai' -> ['anthropic', 'openai']"""
    order = [name.strip().lower() for name in value.split(',') if name.strip()]
    unknown = [name for name in order if name not in PROVIDER_KEY_ENV]
    if unknown:
        raise ConfigurationError(f"Unknown LLM providers: {', '.join(unknown)}")
    return order
