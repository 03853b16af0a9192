from lovetext.tasks.periodic import (
    dispatch_due_messages,
    expire_lapsed_entitlements,
    start_background_tasks,
    stop_background_tasks,
)

__all__ = [
    'dispatch_due_messages',
    'expire_lapsed_entitlements',
    'start_background_tasks',
    'stop_background_tasks',
]
