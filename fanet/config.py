# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Configuration module for FANET scenarios.

Handles loading and validation of scenario configuration from YAML files.
"""

import os
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .mesh.engine import ProtocolSettings


class MobilityConfig(BaseModel):
    """Node mobility configuration."""
    model: str = Field(default="static", description="static or arbitrary")
    x: float = Field(default=0.0, description="Initial X (m)")
    y: float = Field(default=0.0, description="Initial Y (m)")
    z: float = Field(default=0.0, description="Initial Z / altitude (m)")
    min_speed: float = Field(default=10.0, ge=0.0)
    max_speed: float = Field(default=20.0, ge=0.0)
    update_interval: float = Field(default=0.5, gt=0.0, description="Seconds between position updates")
    area_min_x: float = 0.0
    area_max_x: float = 2000.0
    area_min_y: float = 0.0
    area_max_y: float = 2000.0
    min_altitude: float = 50.0
    max_altitude: float = 300.0

    @field_validator('model')
    @classmethod
    def validate_model(cls, v):
        valid_models = ['static', 'arbitrary']
        if v.lower() not in valid_models:
            raise ValueError(f'model must be one of {valid_models}')
        return v.lower()

    @model_validator(mode='after')
    def validate_speed_range(self):
        if self.max_speed < self.min_speed:
            raise ValueError('max_speed must be >= min_speed')
        return self


class ProtocolConfig(BaseModel):
    """Protocol bounds and timer intervals."""
    max_discovery_rounds: int = Field(default=10, ge=1, le=1000)
    max_data_transmissions: int = Field(default=20, ge=1, le=1000)
    max_connectivity_checks: int = Field(default=10, ge=1, le=1000)
    max_hop_count: int = Field(default=5, ge=1, le=32, description="DATA_RELAY hop limit")
    max_ttl: int = Field(default=10, ge=1, le=64, description="RREQ/MESH_DATA hop budget")
    route_timeout: float = Field(default=60.0, gt=0.0)
    discovery_interval: float = Field(default=10.0, gt=0.0)
    data_interval: float = Field(default=15.0, gt=0.0)
    connectivity_interval: float = Field(default=30.0, gt=0.0)
    force_finish_after: float = Field(default=300.0, gt=0.0)
    rreq_cache_timeout: Optional[float] = Field(
        default=None, gt=0.0, description="Evict RREQ dedup records after this age (never if unset)"
    )
    use_legacy_relay: bool = Field(default=False, description="Try DATA_RELAY before route discovery")


class NodeConfig(BaseModel):
    """A single simulated node."""
    name: Optional[str] = Field(None, max_length=100)
    address: str = Field(..., min_length=1, description="Unique network address")
    is_gcs: bool = Field(default=False)
    start_time: float = Field(default=0.0, ge=0.0)
    mobility: MobilityConfig = Field(default_factory=MobilityConfig)


class ScenarioConfig(BaseModel):
    """Scenario configuration model."""

    # Network
    local_port: int = Field(default=5000, ge=1024, le=65535)
    dest_port: int = Field(default=5000, ge=1024, le=65535)
    neighbor_timeout: float = Field(default=30.0, gt=0.0)
    max_transmission_range: float = Field(default=1000.0, gt=0.0)
    radio_range: Optional[float] = Field(
        default=None, gt=0.0, description="Physical delivery cut-off of the simulated medium"
    )
    propagation_delay: float = Field(default=0.001, ge=0.0)

    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    nodes: List[NodeConfig] = Field(..., min_length=1)

    # Run
    duration: float = Field(default=400.0, gt=0.0, description="Simulated seconds")
    seed: int = Field(default=42)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(None, description="Log file path")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of {valid_levels}')
        return v.upper()

    @field_validator('nodes')
    @classmethod
    def validate_unique_addresses(cls, v):
        addresses = [n.address for n in v]
        duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
        if duplicates:
            raise ValueError(f'duplicate node addresses: {duplicates}')
        return v

    def protocol_settings(self, node: NodeConfig) -> ProtocolSettings:
        """Engine settings for one node."""
        p = self.protocol
        return ProtocolSettings(
            local_port=self.local_port,
            dest_port=self.dest_port,
            start_time=node.start_time,
            neighbor_timeout=self.neighbor_timeout,
            max_transmission_range=self.max_transmission_range,
            max_discovery_rounds=p.max_discovery_rounds,
            max_data_transmissions=p.max_data_transmissions,
            max_connectivity_checks=p.max_connectivity_checks,
            max_hop_count=p.max_hop_count,
            max_ttl=p.max_ttl,
            route_timeout=p.route_timeout,
            discovery_interval=p.discovery_interval,
            data_interval=p.data_interval,
            connectivity_interval=p.connectivity_interval,
            force_finish_after=p.force_finish_after,
            rreq_cache_timeout=p.rreq_cache_timeout,
            use_legacy_relay=p.use_legacy_relay,
        )


def load_config(config_path: str) -> ScenarioConfig:
    """
    Load scenario configuration from a YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Validated ScenarioConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If configuration is invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, 'r') as f:
        raw_config = yaml.safe_load(f)

    if not isinstance(raw_config, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")

    # Support environment variable substitution
    raw_config = _substitute_env_vars(raw_config)

    return ScenarioConfig(**raw_config)


def _substitute_env_vars(obj):
    """Recursively substitute environment variables in config values."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        # Support ${VAR} and ${VAR:-default} syntax
        if obj.startswith('${') and obj.endswith('}'):
            var_spec = obj[2:-1]
            if ':-' in var_spec:
                var_name, default = var_spec.split(':-', 1)
                return os.environ.get(var_name, default)
            else:
                return os.environ.get(var_spec, obj)
        return obj
    else:
        return obj


def _default_layout(num_uavs: int, spacing: float) -> List[Tuple[float, float, float]]:
    """UAVs strung out along the X axis, one spacing apart, east of the GCS."""
    return [(spacing * (i + 1), 0.0, 100.0) for i in range(num_uavs)]


def create_default_config(config_path: str, num_uavs: int = 4, spacing: float = 800.0):
    """
    Create a default scenario file: one static GCS at the origin and a
    line of UAVs, so the farther UAVs need the mesh to reach the GCS.

    Args:
        config_path: Path to write the configuration
        num_uavs: Number of UAVs
        spacing: Distance between consecutive nodes (m)
    """
    nodes = [{
        'name': 'GCS',
        'address': '10.0.0.1',
        'is_gcs': True,
        'start_time': 0.0,
        'mobility': {'model': 'static', 'x': 0.0, 'y': 0.0, 'z': 0.0},
    }]
    for i, (x, y, z) in enumerate(_default_layout(num_uavs, spacing)):
        nodes.append({
            'name': f'UAV {i + 1}',
            'address': f'10.0.0.{i + 2}',
            'is_gcs': False,
            'start_time': 0.0,
            'mobility': {'model': 'static', 'x': x, 'y': y, 'z': z},
        })

    default_config = {
        'local_port': 5000,
        'dest_port': 5000,
        'neighbor_timeout': 30.0,
        'max_transmission_range': 1000.0,
        'radio_range': None,
        'propagation_delay': 0.001,
        'protocol': ProtocolConfig().model_dump(),
        'nodes': nodes,
        'duration': 400.0,
        'seed': 42,
        'log_level': 'INFO',
        'log_file': None,
    }

    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

    return path
