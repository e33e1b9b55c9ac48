"""Cryptographic messaging and private-feed services."""

from .content_service import ContentService, EncryptionOptions
from .conversations import ConversationAggregator, ConversationSummary
from .direct_messages import DecryptedMessage, DirectMessageService
from .key_resolver import PublicKeyResolver
from .key_vault import PasswordVault, SecureKeyStore
from .private_feed import (
    EncryptionSourceResolver,
    FeedGrant,
    FeedGrantDirectory,
    FeedKeyStore,
    PrivateFeedService,
)

__all__ = [
    "ContentService",
    "ConversationAggregator",
    "ConversationSummary",
    "DecryptedMessage",
    "DirectMessageService",
    "EncryptionOptions",
    "EncryptionSourceResolver",
    "FeedGrant",
    "FeedGrantDirectory",
    "FeedKeyStore",
    "PasswordVault",
    "PrivateFeedService",
    "PublicKeyResolver",
    "SecureKeyStore",
]
