from pydantic import BaseModel, Field
from typing import Dict, Optional

class User(BaseModel):
    username: str
    email: Optional[str] = None

class TokenData(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None

class InitUploadRequest(BaseModel):
    filename: str
    total_size: int
    metadata: Dict[str, str] = Field(default_factory=dict)

class InitUploadResponse(BaseModel):
    upload_id: str

class ChunkResponse(BaseModel):
    bytes_received: int
    total_size: int
    complete: bool

class CompleteUploadResponse(BaseModel):
    success: bool = True
    file_id: str

class UploadStatusResponse(BaseModel):
    upload_id: str
    filename: str
    bytes_received: int
    total_size: int
    chunks_received: int
    progress_percent: float
    last_activity: str
