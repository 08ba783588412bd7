"""
Collaboration gate: boards, memberships and invites.

- Shared boards: only members may read or edit tasks
- Invites: single-use tokens that expire after `invite_ttl_hours`
"""
import logging
import secrets
from datetime import timedelta
from typing import List, Optional, Tuple

from .docstore import DocumentStore, Query
from .schema import (
    BOARDS,
    INVITES,
    MEMBERS,
    USERS,
    Board,
    BoardMember,
    Invite,
    MemberRole,
    member_doc_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class AccessDenied(Exception):
    """Raised when a user is not allowed to touch a board."""
    pass


def generate_token(nbytes: int = 16) -> str:
    """Random base64url token without padding."""
    return secrets.token_urlsafe(nbytes)


class CollaborationGate:
    """Board membership checks and invite handling."""

    def __init__(self, store: DocumentStore, invite_ttl_hours: int = 72):
        self.store = store
        self.invite_ttl_hours = invite_ttl_hours

    async def create_board(self, name: str, owner_id: str) -> Board:
        """Create a board and make `owner_id` its owner in one batch."""
        board = Board(
            board_id=self.store.new_id(),
            name=(name or "").strip() or "Untitled",
            owner_id=owner_id,
        )
        owner = BoardMember(board.board_id, owner_id, MemberRole.OWNER, joined_at=board.created_at)
        batch = self.store.batch()
        batch.set(BOARDS, board.board_id, board.to_doc())
        batch.set(MEMBERS, owner.member_id, owner.to_doc())
        await batch.commit()
        logger.info(f"Created board {board.board_id} ({board.name!r}) for {owner_id}")
        return board

    async def get_board(self, board_id: str) -> Optional[Board]:
        snap = await self.store.get(BOARDS, board_id)
        return Board.from_doc(board_id, snap.data) if snap.exists else None

    async def get_member(self, board_id: str, user_id: str) -> Optional[BoardMember]:
        snap = await self.store.get(MEMBERS, member_doc_id(board_id, user_id))
        return BoardMember.from_doc(snap.data) if snap.exists else None

    async def is_member(self, board_id: str, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        return await self.get_member(board_id, user_id) is not None

    async def require_member(self, board_id: str, user_id: Optional[str]) -> BoardMember:
        """
        Return the membership of `user_id` on `board_id`.

        Raises AccessDenied for anonymous users and non-members.
        """
        member = await self.get_member(board_id, user_id) if user_id else None
        if member is None:
            logger.warning(f"Access denied: {user_id or 'anonymous'} is not a member of {board_id}")
            raise AccessDenied(f"User is not a member of board {board_id}")
        return member

    async def list_members(self, board_id: str) -> List[BoardMember]:
        """Board members, owners first, with names from the users collection."""
        snaps = await self.store.query(Query.on(MEMBERS, boardId=board_id))
        members = [BoardMember.from_doc(s.data) for s in snaps]
        for member in members:
            user = await self.store.get(USERS, member.user_id)
            if user.exists:
                member.name = user.data.get("name")
        members.sort(key=lambda m: (m.role != MemberRole.OWNER, m.joined_at))
        return members

    async def user_boards(self, user_id: str) -> List[Tuple[Board, BoardMember]]:
        """Boards `user_id` belongs to, newest first."""
        snaps = await self.store.query(Query.on(MEMBERS, userId=user_id))
        result = []
        for snap in snaps:
            member = BoardMember.from_doc(snap.data)
            board = await self.get_board(member.board_id)
            # Membership may outlive a removed board
            if board is not None:
                result.append((board, member))
        result.sort(key=lambda pair: pair[0].created_at, reverse=True)
        return result

    async def create_invite(self, board_id: str, created_by: str, ttl_hours: Optional[int] = None) -> Invite:
        """Create an invite token for `board_id`; only members may invite."""
        await self.require_member(board_id, created_by)
        now = utc_now()
        ttl = self.invite_ttl_hours if ttl_hours is None else ttl_hours
        invite = Invite(
            invite_id=self.store.new_id(),
            board_id=board_id,
            created_by=created_by,
            token=generate_token(),
            expires_at=now + timedelta(hours=ttl),
            created_at=now,
        )
        await self.store.set(INVITES, invite.invite_id, invite.to_doc())
        logger.info(f"Invite {invite.invite_id} created for board {board_id} by {created_by}")
        return invite

    async def resolve_invite(self, token: str) -> Optional[Invite]:
        """Look up a token; None when unknown or expired."""
        if not token:
            return None
        snaps = await self.store.query(Query.on(INVITES, token=token))
        if not snaps:
            return None
        invite = Invite.from_doc(snaps[0].id, snaps[0].data)
        if invite.is_expired():
            logger.info(f"Invite {invite.invite_id} expired at {invite.expires_at.isoformat()}")
            return None
        return invite

    async def accept_invite(self, token: str, user_id: str) -> Optional[str]:
        """
        Join the invited board and consume the token.

        Returns the board id, or None for an unknown or expired token.
        Existing members keep their role.
        """
        invite = await self.resolve_invite(token)
        if invite is None:
            return None

        batch = self.store.batch()
        if not await self.is_member(invite.board_id, user_id):
            member = BoardMember(invite.board_id, user_id, MemberRole.MEMBER)
            batch.set(MEMBERS, member.member_id, member.to_doc(), merge=True)
        batch.delete(INVITES, invite.invite_id)
        await batch.commit()
        logger.info(f"{user_id} joined board {invite.board_id} via invite {invite.invite_id}")
        return invite.board_id
