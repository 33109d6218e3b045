"""Operational configuration for process handles."""

from proclife.lib.config.settings import ProcLifeConfig, config_path, load_config

__all__ = ["ProcLifeConfig", "config_path", "load_config"]
