"""Pipeline utilities for building a categorised literature review from raw citations."""

from .audit import AuditResult, TaxonomyAuditor
from .config_utils import MissingSecretError, PipelineSettings, load_config
from .consolidation import (
    AcceptResult,
    ConsolidationEngine,
    GenerationResult,
    ProposalError,
)
from .corpus import Corpus, CorpusBusyError
from .errors import ErrorKind, ServiceFailure, ServiceOutcome, classify_error
from .extraction import ExtractionPipeline, ExtractionResult, PipelineStateError
from .llm import LLMClient, LLMClientConfig, LLMClientError, LLMRateLimitError
from .merger import MergeResult, ResultMerger
from .models import (
    BatchState,
    BatchStatus,
    CategoryMerge,
    CategoryRename,
    LockSet,
    Proposal,
    Record,
    RejectionLog,
    ThemeMerge,
    ThemeMove,
)
from .normalization import NormalizationResult, TermNormalizer
from .parsing import ParsedPayload, ResponseParseError, parse_json_payload
from .retry import RetryPolicy, call_with_retries
from .segmentation import clean_raw_text, create_batches
from .service import ReviewService, SectionSynthesis
from .synthesis import SectionSynthesizer
from .workspace import ReviewWorkspace

__all__ = [
    "AcceptResult",
    "AuditResult",
    "BatchState",
    "BatchStatus",
    "CategoryMerge",
    "CategoryRename",
    "ConsolidationEngine",
    "Corpus",
    "CorpusBusyError",
    "ErrorKind",
    "ExtractionPipeline",
    "ExtractionResult",
    "GenerationResult",
    "LLMClient",
    "LLMClientConfig",
    "LLMClientError",
    "LLMRateLimitError",
    "LockSet",
    "MergeResult",
    "MissingSecretError",
    "NormalizationResult",
    "ParsedPayload",
    "PipelineSettings",
    "PipelineStateError",
    "Proposal",
    "ProposalError",
    "Record",
    "RejectionLog",
    "ResponseParseError",
    "ResultMerger",
    "RetryPolicy",
    "ReviewService",
    "ReviewWorkspace",
    "SectionSynthesis",
    "SectionSynthesizer",
    "ServiceFailure",
    "ServiceOutcome",
    "TaxonomyAuditor",
    "TermNormalizer",
    "ThemeMerge",
    "ThemeMove",
    "call_with_retries",
    "classify_error",
    "clean_raw_text",
    "create_batches",
    "load_config",
    "parse_json_payload",
]
