# file: agents/__init__.py
from .validator import CandidateValidator
from .verifier import ContactVerifier
from .curator import Curator
from .pipeline import CandidateFilterPipeline
from .quota import DispatchQuotaPolicy
from .writer import Writer
from .responder import ReplyTracker

__all__ = [
    "CandidateValidator", "ContactVerifier", "Curator", "CandidateFilterPipeline",
    "DispatchQuotaPolicy", "Writer", "ReplyTracker"
]
