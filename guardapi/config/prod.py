import os

SETTINGS = {
    "logging": {"level": "INFO"},
    "SECURITY": {
        "QUERY_MONITOR": {"ENABLED": True},
        "SESSION": {"REQUIRE_HTTPS": True},
        "MONITORING": {
            "NOTIFICATION_CHANNELS": [
                s.strip()
                for s in (
                    os.getenv("SECURITY_NOTIFICATION_CHANNELS")
                    or "log,email,rollbar"
                ).split(",")
                if s.strip()
            ],
        },
    },
}
