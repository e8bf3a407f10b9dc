SETTINGS = {
    "logging": {"level": "DEBUG"},
    "SECURITY": {
        "QUERY_MONITOR": {"ENABLED": True},
        "MONITORING": {"NOTIFICATION_CHANNELS": ["log", "rollbar"]},
    },
}
