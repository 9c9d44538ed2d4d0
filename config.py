# project_root/config.py
import os
import tempfile

"""Configuration for the SegMRI mask codec.

This module exposes a number of constants that can be overridden through
environment variables so that container users can point the codec at a
different backend or tune the upload behaviour without code changes.

Supported environment variables:
``API_BASE_URL``
    Base URL of the segmentation backend that receives mask uploads.
``MASK_UPLOAD_PATH``
    Path (relative to ``API_BASE_URL``) of the multipart upload endpoint.
``UPLOAD_TIMEOUT`` / ``FETCH_TIMEOUT``
    Seconds before an upload or a tar download is abandoned.
``MAX_CONCURRENT_UPLOADS``
    Worker count for batch uploads. ``1`` keeps uploads sequential.
``STRICT_RLE_VALIDATION`` / ``STRICT_TAR_VALIDATION``
    Raise on malformed RLE data or truncated archives instead of
    tolerating them.
``EXTRACT_DIR``
    Parent directory for files materialised from tar archives.
``PORT``
    Default server port when running ``main.py``.
"""


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__)))  # Project root

# Segmentation backend
API_BASE_URL = os.getenv("API_BASE_URL", "https://cos30045.xyz")
MASK_UPLOAD_PATH = os.getenv("MASK_UPLOAD_PATH", "/masks/upload")
UPLOAD_TIMEOUT = float(os.getenv("UPLOAD_TIMEOUT", "30"))
FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "60"))

# Mask geometry as produced by the segmentation model
DEFAULT_MASK_WIDTH = int(os.getenv("MASK_WIDTH", "512"))
DEFAULT_MASK_HEIGHT = int(os.getenv("MASK_HEIGHT", "512"))

# Rendering defaults
DEFAULT_MASK_COLOR = os.getenv("DEFAULT_MASK_COLOR", "#FFFFFF")
DEFAULT_OPACITY = float(os.getenv("DEFAULT_OPACITY", "0.6"))
CLASS_COLORS = {
    "RV": "#FF6B6B",  # Right ventricle
    "LVC": "#4ECDC4",  # Left ventricle cavity
    "MYO": "#45B7D1",  # Myocardium
}
FALLBACK_CLASS_COLOR = os.getenv("FALLBACK_CLASS_COLOR", "#FFD93D")

# Upload parameters
DEFAULT_UPLOAD_FORMAT = os.getenv("DEFAULT_UPLOAD_FORMAT", "png")
SUPPORTED_UPLOAD_FORMATS = ("png", "json", "compressed", "base64")
MAX_CONCURRENT_UPLOADS = max(1, int(os.getenv("MAX_CONCURRENT_UPLOADS", "1")))

# Validation strictness
STRICT_RLE_VALIDATION = _env_flag("STRICT_RLE_VALIDATION")
STRICT_TAR_VALIDATION = _env_flag("STRICT_TAR_VALIDATION")

# Tar extraction
TAR_BLOCK_SIZE = 512
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")
# Expected image names look like <study>_<series>_<frame>_<slice>.jpg
MIN_IMAGE_NAME_SEGMENTS = int(os.getenv("MIN_IMAGE_NAME_SEGMENTS", "4"))
EXTRACT_DIR = os.path.abspath(
    os.getenv("EXTRACT_DIR", os.path.join(tempfile.gettempdir(), "segmri_extract"))
)

# Server parameters
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("PORT", "5000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
