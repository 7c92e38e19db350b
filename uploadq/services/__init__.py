from uploadq.services.chunker import ByteRange, choose_part_size, slice_file
from uploadq.services.file_uploader import FileUploader, UploadListener
from uploadq.services.part_transfer import CancellationToken, PartTransferUnit
from uploadq.services.single_upload import upload_single
from uploadq.services.upload_api import UploadAPIClient
from uploadq.services.upload_manager import UploadManager
