# /flowbot/utils/request_utils.py
from fastapi import Request

def get_remote_address(request: Request) -> str:
    """
    Client IP of the request, falling back to loopback when the transport does not expose one.
    """
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"
