"""
Named permission sets for grant edges, keyed by resource kind. The action
lists mirror the usual grant helpers of the AWS provisioning toolkits.
"""

from typing import Dict, List, Tuple

TABLE_READ = [
    "dynamodb:BatchGetItem",
    "dynamodb:GetRecords",
    "dynamodb:GetShardIterator",
    "dynamodb:Query",
    "dynamodb:GetItem",
    "dynamodb:Scan",
    "dynamodb:ConditionCheckItem",
    "dynamodb:DescribeTable",
]
TABLE_WRITE = [
    "dynamodb:BatchWriteItem",
    "dynamodb:PutItem",
    "dynamodb:UpdateItem",
    "dynamodb:DeleteItem",
    "dynamodb:DescribeTable",
]
BUCKET_READ = ["s3:GetObject*", "s3:GetBucket*", "s3:List*"]
BUCKET_WRITE = [
    "s3:DeleteObject*",
    "s3:PutObject",
    "s3:PutObjectLegalHold",
    "s3:PutObjectRetention",
    "s3:PutObjectTagging",
    "s3:PutObjectVersionTagging",
    "s3:Abort*",
]
QUEUE_SEND = ["sqs:SendMessage", "sqs:GetQueueAttributes", "sqs:GetQueueUrl"]
QUEUE_CONSUME = [
    "sqs:ReceiveMessage",
    "sqs:ChangeMessageVisibility",
    "sqs:GetQueueUrl",
    "sqs:DeleteMessage",
    "sqs:GetQueueAttributes",
]


def _merge(*groups: List[str]) -> List[str]:
    merged: List[str] = []
    for group in groups:
        for action in group:
            if action not in merged:
                merged.append(action)
    return merged


PERMISSION_SETS: Dict[str, Dict[str, List[str]]] = {
    "table": {
        "read_data": TABLE_READ,
        "write_data": TABLE_WRITE,
        "read_write_data": _merge(TABLE_READ, TABLE_WRITE),
        "full_access": ["dynamodb:*"],
    },
    "bucket": {
        "read": BUCKET_READ,
        "write": BUCKET_WRITE,
        "read_write": _merge(BUCKET_READ, BUCKET_WRITE),
        "delete": ["s3:DeleteObject*"],
    },
    "queue": {
        "send_messages": QUEUE_SEND,
        "consume_messages": QUEUE_CONSUME,
        "purge": ["sqs:PurgeQueue", "sqs:GetQueueAttributes", "sqs:GetQueueUrl"],
    },
}

# Service reached by each grantable kind, used for private endpoint checks.
ENDPOINT_SERVICE_BY_KIND = {"table": "dynamodb", "bucket": "s3", "queue": "sqs"}

PRINCIPAL_KINDS = ("service", "function")


def is_grantable(kind: str) -> bool:
    return kind in PERMISSION_SETS


def actions_for(kind: str, permission: str) -> List[str]:
    """Return the IAM actions of a named permission set.

    Raises KeyError when the kind has no grants or the permission is unknown.
    """
    try:
        return list(PERMISSION_SETS[kind][permission])
    except KeyError:
        raise KeyError(f"Unknown permission '{permission}' for {kind} resources") from None


def resource_arns(kind: str, arn: str) -> List[str]:
    if kind == "table":
        return [arn, f"{arn}/index/*"]
    if kind == "bucket":
        return [arn, f"{arn}/*"]
    return [arn]


def policy_document(statements: List[Tuple[List[str], List[str]]]) -> Dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {"Effect": "Allow", "Action": actions, "Resource": resources}
            for actions, resources in statements
        ],
    }
