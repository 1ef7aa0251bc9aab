"""
AWS and HTTP service adapters used by the routing pipeline.

This package contains the S3, DynamoDB and SES adapters, MIME helpers,
prompt loading, workstream dispatch and analytics/webhook notification.
"""

__all__ = ['email', 'kv_store', 'notifier', 'prompts', 's3', 'ses_delivery', 'workstream']
