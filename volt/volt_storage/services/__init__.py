"""
Typed collection services.

Services are the API collaborators use to read and change data. Each one
is bound to the router's cache and knows nothing about which back-end is
active.

Invariants:
    - Every mutation goes through CollectionCache.edit() or replace()
    - Services hold no state of their own beyond configuration

How to change safely:
    - New collections get a service here and an entry in the registry
    - Keep StorageServices attribute names stable; callers bind to them
"""

from __future__ import annotations

from dataclasses import dataclass

from ..cache import CollectionCache
from ..config import ServicesConfig
from .admin import AdminService
from .base import CollectionService, KeyedService, SingletonService, new_id, now_iso
from .call_logs import CallLogService
from .discovery import DiscoveryService
from .dms import DmMessageService, DmService
from .files import AttachmentService, FileService
from .invites import InviteService
from .messaging import ChannelService, MessageService, ReactionService, ServerService
from .moderation import AdminLogService, GlobalBanService, ServerBanService
from .records import CallLog, Conversation, DirectMessage, Invite, Message, Record, SystemMessage, User
from .social import BlockService, FriendRequestService, FriendService
from .system_messages import SystemMessageService
from .users import UserService


@dataclass
class StorageServices:
    """Every collection service, wired to one cache."""

    users: UserService
    friends: FriendService
    friend_requests: FriendRequestService
    blocked: BlockService
    dms: DmService
    dm_messages: DmMessageService
    servers: ServerService
    channels: ChannelService
    messages: MessageService
    reactions: ReactionService
    invites: InviteService
    discovery: DiscoveryService
    global_bans: GlobalBanService
    server_bans: ServerBanService
    admin_logs: AdminLogService
    system_messages: SystemMessageService
    call_logs: CallLogService
    files: FileService
    attachments: AttachmentService
    bots: KeyedService
    categories: KeyedService
    e2e_keys: KeyedService
    e2e_true: KeyedService
    self_volts: KeyedService
    pinned_messages: KeyedService
    server_start: SingletonService
    federation: SingletonService
    admin: AdminService


def create_services(cache: CollectionCache, config: ServicesConfig | None = None) -> StorageServices:
    """Wire every service to a cache.

    Args:
        cache: The router's cache
        config: Service tunables (page sizes, expiry offsets)
    """
    config = config or ServicesConfig()
    users = UserService(cache, child_verification_days=config.child_verification_days)
    friends = FriendService(cache)
    blocked = BlockService(cache, friends)
    dms = DmService(cache)
    channels = ChannelService(cache)
    global_bans = GlobalBanService(cache)
    return StorageServices(
        users=users,
        friends=friends,
        friend_requests=FriendRequestService(cache, friends),
        blocked=blocked,
        dms=dms,
        dm_messages=DmMessageService(cache, dms, page_size=config.dm_page_size),
        servers=ServerService(cache, channels),
        channels=channels,
        messages=MessageService(cache, page_size=config.message_page_size),
        reactions=ReactionService(cache),
        invites=InviteService(cache),
        discovery=DiscoveryService(cache),
        global_bans=global_bans,
        server_bans=ServerBanService(cache),
        admin_logs=AdminLogService(cache, limit=config.admin_log_limit),
        system_messages=SystemMessageService(cache),
        call_logs=CallLogService(cache, limit=config.call_log_limit),
        files=FileService(cache),
        attachments=AttachmentService(cache),
        bots=KeyedService(cache, "bots"),
        categories=KeyedService(cache, "categories"),
        e2e_keys=KeyedService(cache, "e2e_keys"),
        e2e_true=KeyedService(cache, "e2e_true"),
        self_volts=KeyedService(cache, "self_volts"),
        pinned_messages=KeyedService(cache, "pinned_messages"),
        server_start=SingletonService(cache, "server_start"),
        federation=SingletonService(cache, "federation"),
        admin=AdminService(cache, users, friends, blocked, global_bans),
    )


__all__ = [
    "StorageServices",
    "create_services",
    # Building blocks
    "CollectionService",
    "KeyedService",
    "SingletonService",
    "new_id",
    "now_iso",
    # Services
    "AdminService",
    "AdminLogService",
    "AttachmentService",
    "BlockService",
    "CallLogService",
    "ChannelService",
    "DiscoveryService",
    "DmMessageService",
    "DmService",
    "FileService",
    "FriendRequestService",
    "FriendService",
    "GlobalBanService",
    "InviteService",
    "MessageService",
    "ReactionService",
    "ServerBanService",
    "ServerService",
    "SystemMessageService",
    "UserService",
    # Records
    "Record",
    "User",
    "Conversation",
    "DirectMessage",
    "Message",
    "Invite",
    "SystemMessage",
    "CallLog",
]
