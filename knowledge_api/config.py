import os

DEFAULT_BEDROCK_REGION = "us-west-2"

# Bedrock Retrieve accepts at most 100 results per call
MAX_TOP_K = 100


def bearer_token() -> str:
    token = os.environ.get("BEARER_TOKEN")
    if not token:
        raise RuntimeError(
            "API key required. Set BEARER_TOKEN in environment variables."
        )
    return token


def bedrock_region() -> str:
    return os.environ.get("BEDROCK_REGION", DEFAULT_BEDROCK_REGION)
