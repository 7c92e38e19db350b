from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------
# Wire schemas shared by the upload API client and routes
# ---------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FileInfo(_WireModel):
    mime_type: str = Field(alias="mimeType")
    file_size: int = Field(alias="fileSize")
    file_name: Optional[str] = Field(default=None, alias="fileName")


class PresignedUrlRequest(_WireModel):
    files: List[FileInfo] = Field(default_factory=list)


class PresignedPart(_WireModel):
    part_number: int = Field(alias="partNumber")
    presigned_url: str = Field(alias="presignedUrl")


class MultipartPlanData(_WireModel):
    key: str
    upload_id: str = Field(alias="uploadId")
    part_size: Optional[int] = Field(default=None, alias="partSize")
    presigned_url_list: List[PresignedPart] = Field(alias="presignedUrlList")


class MultipartPlanResponse(_WireModel):
    code: int
    msg: str = ""
    data: Optional[MultipartPlanData] = None


class CompletedPart(_WireModel):
    part_number: int = Field(alias="partNumber")
    etag: str


class CompleteMultipartRequest(_WireModel):
    key: str
    upload_id: str = Field(alias="uploadId")
    parts: List[CompletedPart]
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class CompleteMultipartData(_WireModel):
    file_url: str = Field(alias="fileUrl")


class CompleteMultipartResponse(_WireModel):
    code: int
    msg: str = ""
    data: Optional[CompleteMultipartData] = None
    file_url: Optional[str] = Field(default=None, alias="fileUrl")

    @property
    def resolved_file_url(self) -> Optional[str]:
        if self.data is not None and self.data.file_url:
            return self.data.file_url
        return self.file_url


class AbortMultipartRequest(_WireModel):
    key: str
    upload_id: str = Field(alias="uploadId")


class ResponseData(_WireModel):
    code: int
    msg: str = ""


class PresignedObject(_WireModel):
    file_url: str = Field(alias="fileUrl")
    presigned_url: str = Field(alias="presignedUrl")
    key: Optional[str] = None


class PresignedObjectResponse(_WireModel):
    code: int
    msg: str = ""
    rows: List[PresignedObject] = Field(default_factory=list)
