"""Engagement automation module -- event orchestration, follow-ups and insights.

Provides EngagementOrchestrator (per-event scoring, stage nudging and task
generation), FollowUpScheduler (staleness scan with a periodic background
loop), and pure insight helpers (risk, urgency, next action, hot leads).
"""
