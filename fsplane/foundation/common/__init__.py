from .circuit_breaker import AsyncCircuitBreaker
from .fsm import Machine, State
from .hashutils import hash_bytes, hash_parts

__all__ = [
    "AsyncCircuitBreaker",
    "Machine",
    "State",
    "hash_bytes",
    "hash_parts",
]
