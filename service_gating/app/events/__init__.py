"""
Invalidation events: ProgressChanged, RuleChanged and EnrollmentChanged,
consumed from Kafka or posted to the webhooks.
"""
