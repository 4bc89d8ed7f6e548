"""Chat domain exports."""

from .errors import (
	AlreadyMember,
	ChatError,
	Forbidden,
	InvalidMessage,
	NotFound,
	TooLarge,
	TransferFailed,
	Unavailable,
	UnsupportedMedia,
	UploadInFlight,
)
from .models import (
	AttachmentContent,
	DirectChat,
	DirectRef,
	Group,
	GroupMember,
	GroupRef,
	Message,
	MessageWindow,
	Presence,
	TextContent,
	parse_conversation_id,
)

__all__ = [
	"AlreadyMember",
	"AttachmentContent",
	"ChatError",
	"DirectChat",
	"DirectRef",
	"Forbidden",
	"Group",
	"GroupMember",
	"GroupRef",
	"InvalidMessage",
	"Message",
	"MessageWindow",
	"NotFound",
	"Presence",
	"TextContent",
	"TooLarge",
	"TransferFailed",
	"Unavailable",
	"UnsupportedMedia",
	"UploadInFlight",
	"parse_conversation_id",
]
