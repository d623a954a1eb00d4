"""
Typed Exception Hierarchy for the Fiscal Inbox.

Every error has a TYPED exception class (catch by type, not message), a
``code`` class attribute (machine-readable, API-safe) and structured
fields (not just a message string).  The HTTP layer maps ``code`` to a
response; the pipeline records ``str(exc)`` on the failing queue unit.

    FiscalInboxError (base)
    |
    +-- ExternalServiceError
    |   +-- TransientExternalError      (429 / 5xx -- retried)
    |   +-- PermanentExternalError      (other 4xx -- never retried)
    |
    +-- CircuitOpenError                (fast-fail, never retried)
    |
    +-- DocumentError
    |   +-- DocumentNotFoundError
    |   +-- DocumentAlreadyExistsError  (conflict on manual import)
    |   +-- PayloadMissingError
    |
    +-- PayloadParseError
    |
    +-- MatchingError
    |   +-- LineItemNotFoundError
    |   +-- ProductNotFoundError
    |   +-- MappingNotFoundError
    |
    +-- QueueError
    |   +-- StageNotRegisteredError
    |   +-- QueueUnitNotFoundError
    |
    +-- ValidationError
    |   +-- InvalidAccessKeyError
    |   +-- InvalidTaxIdError
    |   +-- JustificationRequiredError
    |
    +-- ConfigurationError

Category        | Code                        | When Raised
----------------|-----------------------------|---------------------------------------
External        | EXTERNAL_TRANSIENT          | 429/5xx from the distribution API
                | EXTERNAL_PERMANENT          | 4xx (not 429) from the distribution API
                | CIRCUIT_OPEN                | Endpoint circuit open, call not made
Document        | DOCUMENT_NOT_FOUND          | Unknown document id for tenant
                | DOCUMENT_ALREADY_EXISTS     | Access key already ingested (conflict)
                | PAYLOAD_MISSING             | Parse stage found no raw payload
Parse           | PAYLOAD_PARSE_FAILED        | Malformed or non-NF-e payload
Matching        | LINE_ITEM_NOT_FOUND         | Unknown line item for tenant
                | PRODUCT_NOT_FOUND           | Unknown or inactive product
                | MAPPING_NOT_FOUND           | Unknown supplier mapping
Queue           | STAGE_NOT_REGISTERED        | No handler for a unit's stage
                | QUEUE_UNIT_NOT_FOUND        | Unknown queue unit
Validation      | INVALID_ACCESS_KEY          | Access key is not 44 digits
                | INVALID_TAX_ID              | CNPJ/CPF is not 11 or 14 digits
                | JUSTIFICATION_REQUIRED      | Rejection without justification
Config          | CONFIGURATION_ERROR         | Invalid or incomplete YAML config
"""


class FiscalInboxError(Exception):
    """
    Base exception for all fiscal inbox errors.

    All subclasses have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "FISCAL_INBOX_ERROR"


# External service errors


class ExternalServiceError(FiscalInboxError):
    """The distribution API answered with an HTTP error."""

    code: str = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, status_code: int, message: str, endpoint: str | None = None):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(f"HTTP {status_code} from {endpoint or 'external service'}: {message}")


class TransientExternalError(ExternalServiceError):
    """Rate limiting or server-side failure; safe to retry."""

    code: str = "EXTERNAL_TRANSIENT"


class PermanentExternalError(ExternalServiceError):
    """Client-side failure; retrying cannot help."""

    code: str = "EXTERNAL_PERMANENT"


class CircuitOpenError(FiscalInboxError):
    """Call rejected because the named circuit is open."""

    code: str = "CIRCUIT_OPEN"

    def __init__(self, circuit_name: str, retry_after_seconds: float):
        self.circuit_name = circuit_name
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Circuit '{circuit_name}' is open; retry in {retry_after_seconds:.0f}s"
        )


# Document errors


class DocumentError(FiscalInboxError):
    """Base exception for inbox document errors."""

    code: str = "DOCUMENT_ERROR"


class DocumentNotFoundError(DocumentError):
    """Document with given id was not found for the tenant."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class DocumentAlreadyExistsError(DocumentError):
    """A document with this access key is already in the tenant's inbox."""

    code: str = "DOCUMENT_ALREADY_EXISTS"

    def __init__(self, access_key: str, document_id: str):
        self.access_key = access_key
        self.document_id = document_id
        super().__init__(
            f"Document with access key {access_key} already exists: {document_id}"
        )


class PayloadMissingError(DocumentError):
    """The document has no raw payload to parse."""

    code: str = "PAYLOAD_MISSING"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} has no payload")


class PayloadParseError(FiscalInboxError):
    """The raw payload is not a well-formed NF-e."""

    code: str = "PAYLOAD_PARSE_FAILED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Could not parse payload: {reason}")


# Matching errors


class MatchingError(FiscalInboxError):
    """Base exception for product matching errors."""

    code: str = "MATCHING_ERROR"


class LineItemNotFoundError(MatchingError):
    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item not found: {line_item_id}")


class ProductNotFoundError(MatchingError):
    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found or inactive: {product_id}")


class MappingNotFoundError(MatchingError):
    code: str = "MAPPING_NOT_FOUND"

    def __init__(self, mapping_id: str):
        self.mapping_id = mapping_id
        super().__init__(f"Supplier mapping not found: {mapping_id}")


# Queue errors


class QueueError(FiscalInboxError):
    """Base exception for processing queue errors."""

    code: str = "QUEUE_ERROR"


class StageNotRegisteredError(QueueError):
    """No handler is registered for a queue unit's stage."""

    code: str = "STAGE_NOT_REGISTERED"

    def __init__(self, stage: str, available: tuple[str, ...] = ()):
        self.stage = stage
        self.available = available
        super().__init__(
            f"No handler registered for stage '{stage}'. Available: {list(available)}"
        )


class QueueUnitNotFoundError(QueueError):
    code: str = "QUEUE_UNIT_NOT_FOUND"

    def __init__(self, unit_id: str):
        self.unit_id = unit_id
        super().__init__(f"Queue unit not found: {unit_id}")


# Validation errors (inbound operations, raised before any mutation)


class ValidationError(FiscalInboxError):
    """Malformed input to an inbound operation."""

    code: str = "VALIDATION_ERROR"


class InvalidAccessKeyError(ValidationError):
    code: str = "INVALID_ACCESS_KEY"

    def __init__(self, access_key: str):
        self.access_key = access_key
        super().__init__(f"Access key must have 44 digits: {access_key!r}")


class InvalidTaxIdError(ValidationError):
    code: str = "INVALID_TAX_ID"

    def __init__(self, tax_id: str):
        self.tax_id = tax_id
        super().__init__(f"Tax id must have 11 (CPF) or 14 (CNPJ) digits: {tax_id!r}")


class JustificationRequiredError(ValidationError):
    code: str = "JUSTIFICATION_REQUIRED"

    def __init__(self, kind: str, min_length: int):
        self.kind = kind
        self.min_length = min_length
        super().__init__(
            f"Acknowledgment '{kind}' requires a justification of at least "
            f"{min_length} characters"
        )


class ConfigurationError(FiscalInboxError):
    """Inbox configuration is missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)
