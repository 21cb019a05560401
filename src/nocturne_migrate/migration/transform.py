"""
Data Transformation Service
===========================
Routes documents to their collection transformer, applies pre-transform
validation when enabled, and aggregates per-collection statistics.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config.config import TransformationOptions
from ..errors import TransformationError
from .models import ValidationResult, ValidationSeverity
from .transformers import TRANSFORMERS, BaseDocumentTransformer, TransformationStatistics

logger = logging.getLogger(__name__)


@dataclass
class TransformResult:
    """A transformed record, or the reasons it could not be produced."""
    collection: str
    record: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.record is not None and not self.errors


class DataTransformationService:
    """Maps source documents to target records for every supported collection."""

    def __init__(self, options: Optional[TransformationOptions] = None):
        self.options = options or TransformationOptions()
        self._transformers: Dict[str, BaseDocumentTransformer] = {}

    def get_supported_collections(self) -> List[str]:
        return list(TRANSFORMERS.keys())

    def is_supported(self, collection: str) -> bool:
        return collection in TRANSFORMERS

    def _get_transformer(
        self, collection: str, options: Optional[TransformationOptions] = None
    ) -> BaseDocumentTransformer:
        if collection not in TRANSFORMERS:
            raise ValueError(
                f"Unsupported collection: {collection}. "
                f"Supported: {self.get_supported_collections()}"
            )
        transformer = self._transformers.get(collection)
        if transformer is None:
            transformer = TRANSFORMERS[collection](options or self.options)
            self._transformers[collection] = transformer
        elif options is not None:
            transformer.options = options
        return transformer

    def table_for(self, collection: str) -> str:
        return self._get_transformer(collection).table_name

    def transform(
        self,
        collection: str,
        document: Dict[str, Any],
        options: Optional[TransformationOptions] = None,
    ) -> TransformResult:
        """
        Transform one document.

        Args:
            collection: Source collection name
            document: Raw source document
            options: Overrides the service's default options

        Returns:
            TransformResult with the record or the errors that prevented it

        Raises:
            ValueError: If the collection is not supported
        """
        transformer = self._get_transformer(collection, options)
        effective = options or transformer.options
        result = TransformResult(collection=collection)

        if effective.validate_data:
            validation = transformer.validate(document)
            result.warnings.extend(validation.warnings)
            if not validation.is_valid:
                result.errors.extend(validation.errors)
                transformer.record_failure("; ".join(validation.errors))
                return result
            if validation.warnings:
                transformer.record_warning()

        try:
            result.record = transformer.transform(document)
        except TransformationError as e:
            result.errors.append(e.message)
            logger.debug(f"Transform failed for {collection}/{document.get('_id')}: {e}")
        return result

    def validate_document(self, collection: str, document: Dict[str, Any]) -> ValidationResult:
        """Validate a document with its transformer's rules."""
        validation = self._get_transformer(collection).validate(document)
        result = ValidationResult(warnings=list(validation.warnings))
        doc_id = str(document.get("_id")) if "_id" in document else None
        for error in validation.errors:
            result.add_error(
                "transformation_validation",
                error,
                severity=ValidationSeverity.ERROR,
                collection=collection,
                document_id=doc_id,
            )
        if validation.suggested_fixes:
            result.details["suggested_fixes"] = list(validation.suggested_fixes)
        return result

    def get_statistics(self, collection: str) -> TransformationStatistics:
        return self._get_transformer(collection).statistics

    def get_all_statistics(self) -> Dict[str, TransformationStatistics]:
        return {name: t.statistics for name, t in self._transformers.items()}

    def reset_statistics(self, collection: Optional[str] = None) -> None:
        targets = [collection] if collection else list(self._transformers)
        for name in targets:
            if name in self._transformers:
                self._transformers[name].reset_statistics()
