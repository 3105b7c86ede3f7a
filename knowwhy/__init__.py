"""
KnowWhy

Decision intelligence over team conversations: Scribe (decision capture) and
Retriever (decision recall).

Philosophy:
- Briefs are reproducible from payload_text (Markdown)
- A brief without a grounded source reference is never marked valid
- Every collaborator call is rate limited and retried through one policy
- Components are built once by the runtime and injected, never global

Usage:
    from knowwhy.common import load_config, Metrics
    from knowwhy.common.schemas import DecisionBrief, DecisionCandidate, Message
    from knowwhy.scribe import DecisionDetector, BriefSynthesizer, CapturePipeline
    from knowwhy.retriever import RetrievalEngine
    from knowwhy.runtime import build_runtime
"""

__version__ = "0.1.0"
