"""Pydantic models for file transfer to the printer."""

from pydantic import BaseModel


class TransferState(BaseModel):
    """The single upload the file server is currently willing to serve."""
    token: str
    local_path: str
    filename: str
    md5_hex: str
    size_bytes: int
    auto_print_requested: bool = False


class HttpStatus:
    OK = "200 OK"
    NOT_FOUND = "404 Not Found"
    METHOD_NOT_ALLOWED = "405 Method Not Allowed"
    INTERNAL_ERROR = "500 Internal Server Error"
