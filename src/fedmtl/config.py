"""
Configuration for the federated server and its hyperweights.

Options form a closed set: strategies and policies are enums, and unknown
names are rejected when the configuration is parsed. Configurations can be
built in code or loaded from a YAML file:

    server:
      epochs_per_client: 1
      encoder_agg: conflict_averse
      decoder_agg: cross_attention
      ca_c: 0.4
    hyperweight:
      enc_lr: 0.001
    keys:
      encoder_prefix: "encoder."
    experiments:
      - {encoder_agg: none, decoder_agg: none, rounds: 10}
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Tuple, Type

import yaml

from fedmtl.errors import UnsupportedStrategyError
from fedmtl.weight_map import KeyScheme


class EncoderAgg(str, Enum):
    NONE = "none"
    FEDAVG = "fedavg"
    CONFLICT_AVERSE = "conflict_averse"


class DecoderAgg(str, Enum):
    NONE = "none"
    FEDAVG = "fedavg"
    CROSS_ATTENTION = "cross_attention"


class FirstRoundPolicy(str, Enum):
    """What round 0 aggregates against.

    PRETRAIN_BASELINE: deltas are taken against the snapshot captured before
        any training (the server's initial "last" checkpoint).
    SKIP: round 0 trains and rotates snapshots but does not aggregate.
    """
    PRETRAIN_BASELINE = "pretrain_baseline"
    SKIP = "skip"


class Solver(str, Enum):
    PROJECTED_GD = "pgd"
    SLSQP = "slsqp"


def parse_option(enum_cls: Type[Enum], value: Any) -> Enum:
    """Parse an enum option, raising UnsupportedStrategyError on unknown names."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [e.value for e in enum_cls]
        raise UnsupportedStrategyError(
            f"Unknown {enum_cls.__name__} '{value}', expected one of {allowed}"
        ) from None


@dataclass
class HyperweightConfig:
    enc_lr: float = 1e-3
    dec_lr: float = 1e-3
    init_alpha: float = 0.1
    init_beta: float = 0.1

    @classmethod
    def from_dict(cls, d: Dict) -> "HyperweightConfig":
        _check_fields(cls, d)
        return cls(**{k: float(v) for k, v in d.items()})


@dataclass
class ServerConfig:
    """
    Mutable server configuration, read at the start of each round.

    Attributes:
        epochs_per_client: Local epochs each client trains per round
        encoder_agg: Encoder aggregation strategy
        decoder_agg: Decoder aggregation strategy
        ca_c: Conflict-averse coefficient C (>= 0)
        diagnostics_every: Compute diagnostics every n rounds (0 disables)
        eval_every: Evaluate clients every n rounds (0 disables)
        checkpoint_every: Emit checkpoint snapshots every n rounds (0 disables)
        log_alpha_beta: Record alpha/beta history each round
        first_round: Round-0 baseline policy
        solver: Simplex solver for the conflict-averse weights
        hyperweight: Hyperweight learning rates and initial values
        keys: Checkpoint naming scheme
    """
    epochs_per_client: int = 1
    encoder_agg: EncoderAgg = EncoderAgg.NONE
    decoder_agg: DecoderAgg = DecoderAgg.NONE
    ca_c: float = 0.0
    diagnostics_every: int = 1
    eval_every: int = 1
    checkpoint_every: int = 0
    log_alpha_beta: bool = False
    first_round: FirstRoundPolicy = FirstRoundPolicy.PRETRAIN_BASELINE
    solver: Solver = Solver.PROJECTED_GD
    hyperweight: HyperweightConfig = field(default_factory=HyperweightConfig)
    keys: KeyScheme = field(default_factory=KeyScheme)

    def __setattr__(self, name, value):
        # option names are parsed on every assignment, including between rounds
        if name in _OPTION_FIELDS:
            value = parse_option(_OPTION_FIELDS[name], value)
        super().__setattr__(name, value)

    def __post_init__(self):
        if self.epochs_per_client < 0:
            raise ValueError("epochs_per_client must be >= 0")
        if self.ca_c < 0:
            raise ValueError("ca_c must be >= 0")

    @classmethod
    def from_dict(cls, d: Dict) -> "ServerConfig":
        d = dict(d)
        hyper = HyperweightConfig.from_dict(d.pop("hyperweight", {}) or {})
        keys = KeyScheme.from_dict(d.pop("keys", {}) or {})
        _check_fields(cls, d)
        return cls(hyperweight=hyper, keys=keys, **d)

    def to_dict(self) -> Dict:
        out = asdict(self)
        for name in ("encoder_agg", "decoder_agg", "first_round", "solver"):
            out[name] = getattr(self, name).value
        return out


_OPTION_FIELDS = {
    "encoder_agg": EncoderAgg,
    "decoder_agg": DecoderAgg,
    "first_round": FirstRoundPolicy,
    "solver": Solver,
}


def _check_fields(cls, d: Dict):
    unknown = set(d) - {f.name for f in fields(cls)}
    if unknown:
        raise KeyError(f"Unknown {cls.__name__} fields: {sorted(unknown)}")


def load_config(config_path: str) -> Tuple[ServerConfig, List[Dict]]:
    """
    Load a server configuration and experiment plans from a YAML file.

    The ``hyperweight`` and ``keys`` sections may sit at top level or inside
    ``server``.

    Returns:
        (ServerConfig, list of raw experiment plan dicts)
    """
    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    server = dict(config.get("server", {}) or {})
    for section in ("hyperweight", "keys"):
        if section in config:
            server[section] = config[section]

    return ServerConfig.from_dict(server), list(config.get("experiments", []) or [])
