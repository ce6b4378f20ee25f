MAX_EXECUTION_STEPS = 2000
DEFAULT_RUN_TIMEOUT_MS = 30 * 60 * 1000
DEFAULT_NODE_TIMEOUT_MS = 5 * 60 * 1000

RUNTIME_KEY = "__runtime"
CHECKPOINT_KEY = "checkpoint"
RESUME_REASON_CHECKPOINT = "deterministic_resume_checkpoint"

DEFAULT_APPROVAL_REASON = "Approval required"
