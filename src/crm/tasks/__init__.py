"""Agent task module -- task schemas, the rule engine and task persistence.

Provides TaskSpec/TaskCreate/Task schemas, the declarative TASK_RULES table
with generate_tasks(), and TaskService for manual and automated task
creation and status updates.
"""
