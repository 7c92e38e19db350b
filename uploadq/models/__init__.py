from uploadq.models.upload import (
    DEFAULT_MIME_TYPE,
    PartRecord,
    PartTarget,
    SourceFile,
    UploadPlan,
    UploadResult,
    UploadStatus,
)
