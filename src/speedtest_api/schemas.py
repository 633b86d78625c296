from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class APIMessage(BaseModel):
    message: str = Field(..., description="Human readable message")


class ErrorMessage(BaseModel):
    error: str = Field(..., description="Generic error description")


class DownloadPoint(BaseModel):
    date: str = Field(..., description="Measurement timestamp (ISO-8601)")
    download: Optional[float] = Field(None, description="Measured download throughput")


class Averages(BaseModel):
    averageDownload: Optional[float] = Field(None, description="Mean download today, null without data")
    averageUpload: Optional[float] = Field(None, description="Mean upload today, null without data")
    averagePing: Optional[float] = Field(None, description="Mean ping today, null without data")


class ResultPage(BaseModel):
    totalRows: int
    totalPages: int
    remainingPages: int
    data: List[Dict[str, Any]] = Field(default_factory=list, description="Rows ordered by id, newest first")


class ResultData(BaseModel):
    data: Any = Field(None, description="Opaque payload stored with the result")
