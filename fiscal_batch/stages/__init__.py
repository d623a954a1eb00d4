"""
fiscal_batch.stages -- Stage protocol, registry, and the three pipeline stages.
"""

from fiscal_batch.stages.base import StageHandler, StageRegistry, load_document
from fiscal_batch.stages.match import MatchProductsStage, ProductMatcher
from fiscal_batch.stages.parse import ParseDocumentStage
from fiscal_batch.stages.propose import GenerateProposalStage

__all__ = [
    "GenerateProposalStage",
    "MatchProductsStage",
    "ParseDocumentStage",
    "ProductMatcher",
    "StageHandler",
    "StageRegistry",
    "load_document",
]
