from .base import BaseTask, TaskContext, TaskResult
from .identity import GuestUsersTask, GroupMembersTask, GroupMembershipTask
from .mailbox import (
    MailboxPermissionsTask,
    MailboxFoldersTask,
    AutoRepliesTask,
    SetAutoReplyTask,
    AuditLogTask,
    ConvertSharedTask,
    MailboxAccessTask,
)
from .collaboration import SiteOwnersTask, TeamChannelsTask
from .directory import AdUsersTask, DisableStaleUsersTask
from .filesystem import FolderAclTask, FolderPermissionTask, CleanupFilesTask

ALL_TASKS = [
    # Reports
    GuestUsersTask,
    GroupMembersTask,
    MailboxPermissionsTask,
    MailboxFoldersTask,
    AutoRepliesTask,
    AuditLogTask,
    SiteOwnersTask,
    TeamChannelsTask,
    AdUsersTask,
    FolderAclTask,
    # Changes
    ConvertSharedTask,
    SetAutoReplyTask,
    GroupMembershipTask,
    MailboxAccessTask,
    FolderPermissionTask,
    CleanupFilesTask,
    DisableStaleUsersTask,
]

TASKS_BY_NAME = {cls.name: cls for cls in ALL_TASKS}

__all__ = [
    "BaseTask",
    "TaskContext",
    "TaskResult",
    "GuestUsersTask",
    "GroupMembersTask",
    "GroupMembershipTask",
    "MailboxPermissionsTask",
    "MailboxFoldersTask",
    "AutoRepliesTask",
    "SetAutoReplyTask",
    "AuditLogTask",
    "ConvertSharedTask",
    "MailboxAccessTask",
    "SiteOwnersTask",
    "TeamChannelsTask",
    "AdUsersTask",
    "DisableStaleUsersTask",
    "FolderAclTask",
    "FolderPermissionTask",
    "CleanupFilesTask",
    "ALL_TASKS",
    "TASKS_BY_NAME",
]
