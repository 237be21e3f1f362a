"""stepgate - step-flow orchestration for LLM-backed workers.

Drives a worker through initial, continuation, verification and closure
phases against an external work-item until a completion condition holds.
All mutations of the work-item pass through the boundary hook.
"""

__version__ = "0.1.0"
