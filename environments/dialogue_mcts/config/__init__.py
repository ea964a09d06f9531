# config mgmt package

import os
import yaml
from pathlib import Path

CONFIG_DIR = Path(__file__).parent

# env var -> (section, key, type)
ENV_OVERRIDES = {
    "NUM_SIMULATIONS": ("mcts", "num_simulations", int),
    "SIMULATION_DEPTH": ("mcts", "simulation_depth", int),
    "MAX_TREE_DEPTH": ("mcts", "max_depth", int),
    "MAX_CONCURRENCY": ("mcts", "max_concurrency", int),
}

def load_config(config_name):
    config_path = CONFIG_DIR / f"{config_name}.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Config file {config_name}.yaml not found in {CONFIG_DIR}")

    with open(config_path, 'r') as file:
        config = yaml.safe_load(file)
    return config or {}

def get_model_config():
    return load_config("models")

def get_search_config():
    config = load_config("search")

    # env vars win over the yaml defaults (compute scaling without editing files)
    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ValueError(f"{env_name} must be {cast.__name__}, got {raw!r}") from None
        config.setdefault(section, {})[key] = value

    return config

def get_oracle_settings():
    config = get_model_config()
    return config.get("oracle", {})
