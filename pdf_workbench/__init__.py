"""
PDF Workbench - PDF optimization and page manipulation engine.

Recompresses and downsamples embedded images, compacts the object graph on
save, copies pages between documents and renders page previews.
"""

from .config import CompressionQuality, CompressionSettings, ImageRewriteConfig, SaveOptions
from .document import Document
from .errors import (
    CodecFailureError,
    CorruptPDFError,
    InvalidArgumentError,
    IOFailureError,
    NotFoundError,
    OperationCancelledError,
    PDFEngineError,
    SubFailure,
)
from .graft import GraftMap, GraftResult, graft_object, graft_page
from .pipeline import CompressionResult, SaveResult, compress_batch, compress_pdf, save, save_to_bytes
from .rasterize import BasicInterpreter, MuPDFInterpreter, Pixmap, render_page, render_thumbnail
from .tools import extract_range, merge_pdfs, split_at_page

__version__ = "1.0.0"
__author__ = "PDF Workbench"
