from .service import ConversionService
from .session import ConversionSession
from .models import ConversionResult, EncodingRequest, OutputFormat

__all__ = ["ConversionService", "ConversionSession", "ConversionResult", "EncodingRequest", "OutputFormat"]
