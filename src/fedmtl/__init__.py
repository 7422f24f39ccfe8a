"""
Hyper Conflict-Averse Federated Multi-Task Aggregation

This package implements the server side of a federated multi-task learning
system with:
- Conflict-averse encoder aggregation over heterogeneous clients
- Cross-attention decoder aggregation across (client, task) blocks
- Learnable per-client (alpha) and per-layer (beta) hyperweights, updated
  with a one-round-delayed meta-update
- Inter-client divergence diagnostics

Key modules:
- weight_map: Checkpoint naming, dict algebra, flatten/unflatten
- aggregate: Encoder/decoder aggregation strategies
- hyperweight: Learnable aggregation policies
- server: Round state machine
- experiment: Sequential experiment runner and delta_m
"""

from .aggregate import aggregate, get_ca_delta, homo_average_deltas
from .client import ClientMetrics, MultiTaskClient, TaskReport, TrainableClient
from .config import (
    DecoderAgg,
    EncoderAgg,
    FirstRoundPolicy,
    HyperweightConfig,
    ServerConfig,
    Solver,
    load_config
)
from .diagnostics import InterClientDiagnostics, compute_inter_client_diagnostics
from .errors import (
    AggregationError,
    CollisionError,
    KeyFormatError,
    ShapeMismatchError,
    UnsupportedStrategyError
)
from .experiment import Experiment, ExperimentPlan, ExperimentRunner, delta_m
from .hyperweight import Hyperweight, HyperweightDecoder, HyperweightEncoder, create_hyperweight
from .server import FederatedServer, RoundPhase, ServerCallbacks
from .weight_map import KeyScheme, WeightMap

__all__ = [
    'aggregate',
    'get_ca_delta',
    'homo_average_deltas',
    'ClientMetrics',
    'MultiTaskClient',
    'TaskReport',
    'TrainableClient',
    'DecoderAgg',
    'EncoderAgg',
    'FirstRoundPolicy',
    'HyperweightConfig',
    'ServerConfig',
    'Solver',
    'load_config',
    'InterClientDiagnostics',
    'compute_inter_client_diagnostics',
    'AggregationError',
    'CollisionError',
    'KeyFormatError',
    'ShapeMismatchError',
    'UnsupportedStrategyError',
    'Experiment',
    'ExperimentPlan',
    'ExperimentRunner',
    'delta_m',
    'Hyperweight',
    'HyperweightDecoder',
    'HyperweightEncoder',
    'create_hyperweight',
    'FederatedServer',
    'RoundPhase',
    'ServerCallbacks',
    'KeyScheme',
    'WeightMap'
]
