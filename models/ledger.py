"""
Song request tally models.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, List, Set, Tuple, Union


@dataclass
class RequestEntry:
    """Tally for one song. `count` always equals the number of distinct users."""

    song_key: str
    count: int = 0
    seen_users: Union[Set[str], FrozenSet[str]] = field(default_factory=set)
    first_requested_at: datetime = field(default_factory=datetime.now)

    def add_user(self, user_id: str) -> bool:
        """
        Count a user for this song.
        Returns True if the user was new, False if already counted.
        """
        if user_id in self.seen_users:
            return False
        self.seen_users.add(user_id)
        self.count += 1
        return True

    def snapshot(self) -> "RequestEntry":
        """Copy with a frozen user set, safe to hand out."""
        return replace(self, seen_users=frozenset(self.seen_users))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "song": self.song_key,
            "count": self.count,
            "first_requested_at": self.first_requested_at.isoformat(),
        }


RankingSnapshot = List[Tuple[str, RequestEntry]]


@dataclass
class RequestLedger:
    """
    In-memory tally of song requests for the current broadcast.
    Each user counts at most once per song. Entries are never removed.
    """

    # Insertion-ordered: ties in the ranking keep first-seen order
    entries: Dict[str, RequestEntry] = field(default_factory=dict)

    @staticmethod
    def normalize_key(song: str) -> str:
        """Case-normalized key for a song string."""
        return " ".join(song.split()).casefold()

    def add_request(self, song: str, user_id: str) -> bool:
        """
        Record a request for a song.

        Args:
            song: Song string (artist - title, or free text)
            user_id: Stable id of the requesting user

        Returns:
            True if the song's count increased, False for repeats or empty songs
        """
        key = self.normalize_key(song or "")
        if not key:
            return False

        entry = self.entries.get(key)
        if entry is None:
            entry = RequestEntry(song_key=key)
            self.entries[key] = entry

        return entry.add_user(str(user_id))

    def get_top(self, limit: int = 5) -> RankingSnapshot:
        """
        Get the most requested songs.

        Returns:
            Up to `limit` (song_key, entry) pairs, highest count first
        """
        if limit <= 0:
            return []
        # sorted() is stable, so equal counts keep insertion order
        ranked = sorted(self.entries.values(), key=lambda e: e.count, reverse=True)
        return [(entry.song_key, entry.snapshot()) for entry in ranked[:limit]]

    def top_songs(self, limit: int = 3) -> List[str]:
        """Song keys of the top entries, for prompt context."""
        return [key for key, _ in self.get_top(limit)]

    def count_for(self, song: str) -> int:
        """Current count for a song (0 if never requested)."""
        entry = self.entries.get(self.normalize_key(song))
        return entry.count if entry else 0

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self, limit: int = 10) -> dict:
        """Convert ranking to dictionary for API responses."""
        return {
            "total_songs": len(self.entries),
            "top": [
                {"position": i + 1, **entry.to_dict()}
                for i, (_, entry) in enumerate(self.get_top(limit))
            ],
        }
