"""Deal lifecycle module -- schemas, scoring, state machine, conversion and stores.

Provides Pydantic schemas (Deal, engagement inputs, link inputs), the
EngagementScorer and temperature classifier, the stage/status state
machine, link-to-deal conversion with snapshot reconciliation, and the
async store protocols with in-memory implementations.
"""
