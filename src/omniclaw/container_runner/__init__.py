"""Container runner: the machinery between a backend and one agent run.

This package is split into focused submodules:
  _serialization : JSON boundary crossing (AgentInput -> dict, output parsing)
  _stream_parser : Incremental output marker parser with capped buffers
  _timeouts      : Startup and idle timers
  _delivery      : Ordered async delivery of parsed outputs
  _lifecycle     : Per-run state machine and exit interpretation
  _process       : Process handles, graceful stop, stream pumping
  _mounts        : Volume mount list and container arg construction
  _logging       : Run log file writing
"""

from omniclaw.container_runner._delivery import DeliveryChain, OnOutput
from omniclaw.container_runner._lifecycle import (
    TERMINAL_STATES,
    LifecycleController,
    OnTimeout,
    RunState,
    StreamState,
)
from omniclaw.container_runner._process import (
    ContainerProcessHandle,
    DetachedProcessHandle,
    graceful_stop,
    pump_stream,
)
from omniclaw.container_runner._serialization import (
    OutputProtocolError,
    input_to_dict,
    output_record_to_dict,
    parse_output_record,
)
from omniclaw.container_runner._stream_parser import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    OutputStreamParser,
)
from omniclaw.container_runner._timeouts import TimeoutArbiter, TimeoutReason

__all__ = [
    "OUTPUT_END_MARKER",
    "OUTPUT_START_MARKER",
    "TERMINAL_STATES",
    "ContainerProcessHandle",
    "DeliveryChain",
    "DetachedProcessHandle",
    "LifecycleController",
    "OnOutput",
    "OnTimeout",
    "OutputProtocolError",
    "OutputStreamParser",
    "RunState",
    "StreamState",
    "TimeoutArbiter",
    "TimeoutReason",
    "graceful_stop",
    "input_to_dict",
    "output_record_to_dict",
    "parse_output_record",
    "pump_stream",
]
