"""Friend graph exports."""

from . import audit  # noqa: F401
from .exceptions import (  # noqa: F401
	AlreadyFriends,
	AlreadyRequested,
	InvalidTarget,
	NoPendingRequest,
	PartialMutation,
	RequestRejected,
	SocialError,
	TargetNotFound,
)
from .models import RelationshipState, relationship_state  # noqa: F401
from .service import FriendGraphService  # noqa: F401
