"""
Default settings for Groundwork.

These are the default values used when no user configuration exists.
"""

DEFAULT_SETTINGS = {
    "version": "1.0.0",

    # State document, relative to the project directory
    "state_file": "groundwork.tfstate",

    # Executor
    "parallelism": 10,
    "operation_timeout": 900,  # seconds per provider call
    "best_effort": False,
    "refresh": True,

    # Logging
    "log_level": "INFO",
    "log_file": False,

    # Retry policies per provider operation; "default" fills gaps
    "retry": {
        "default": {
            "attempts": 3,
            "delay": 2.0,
            "backoff": 2.0,
            "max_delay": 30.0,
        },
        "create": {},
        "read": {},
        "update": {},
        "delete": {
            "attempts": 5,
        },
    },

    # Confirmation prompts
    "confirmations": {
        "apply": True,
        "destroy": True,
    },
}
