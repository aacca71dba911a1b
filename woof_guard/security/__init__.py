"""Security event logging, redaction, monitoring and alerting."""
