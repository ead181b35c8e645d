"""t5beam: encoder subgraph contract checks and first-pass feeds for beam search.

- Installs safe logging handlers on import
- Re-exports the validator, feed builder and their error taxonomy
"""

import logging as _logging

from .utils.logger import get_logger as _get_safe_logger

_get_safe_logger('t5beam')

from .config import BeamSearchParams, SubgraphRuntimeConfig, build_runtime_config_from_env  # noqa: E402
from .inference.subgraph_errors import (  # noqa: E402
    ContractArityError,
    ContractError,
    ContractNamingError,
    ContractShapeError,
    ContractTypeError,
    PreconditionViolation,
)
from .inference.subgraph_params import LayerCacheParameters, get_parameters  # noqa: E402
from .inference.subgraph_signature import (  # noqa: E402
    GraphSignature,
    SlotSpec,
    find_implicit_inputs,
    load_encoder_subgraph,
    signature_from_graph,
    signature_from_model,
    signature_from_session,
)
from .inference.beam_search_device_helper import add_to_feeds, create_encoder_inputs  # noqa: E402
from .inference.t5_encoder_subgraph import (  # noqa: E402
    FeedBatch,
    T5EncoderSubgraph,
    ValidatedT5EncoderSubgraph,
    create_initial_feeds,
)

__version__ = "0.1.0"

_logging.getLogger('t5beam.boot').debug('t5beam %s loaded', __version__)

__all__ = [
    'BeamSearchParams',
    'SubgraphRuntimeConfig',
    'build_runtime_config_from_env',
    'ContractError',
    'ContractArityError',
    'ContractNamingError',
    'ContractTypeError',
    'ContractShapeError',
    'PreconditionViolation',
    'LayerCacheParameters',
    'get_parameters',
    'GraphSignature',
    'SlotSpec',
    'find_implicit_inputs',
    'load_encoder_subgraph',
    'signature_from_graph',
    'signature_from_model',
    'signature_from_session',
    'create_encoder_inputs',
    'add_to_feeds',
    'FeedBatch',
    'T5EncoderSubgraph',
    'ValidatedT5EncoderSubgraph',
    'create_initial_feeds',
    '__version__',
]
