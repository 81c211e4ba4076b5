"""Pydantic schemas for the upload API."""

from pydantic import BaseModel


class UploadResponse(BaseModel):
    """Upload result: public URL and the assigned short name."""

    full_url: str
    file_name: str
