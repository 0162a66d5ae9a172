"""
Arena reports: leaderboard rows, voting analytics, and vote-history exports
(CSV / JSON). All functions take plain model lists and never touch the store.
"""

import csv
import io
import json
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List

from models import Competitor, Matchup, VoteRecord

UNKNOWN_NAME = "Unknown"
CSV_FIELDS = ["Date", "Winner", "Loser", "Influence"]


def compute_leaderboard(competitors: List[Competitor]) -> List[dict]:
    """
    Rows sorted by rating descending:
    [{rank, id, name, rating, tier, streak, record, win_rate, ...}]
    """
    ordered = sorted(competitors,
                     key=lambda c: (-c.rating, -c.record.wins, c.name.lower()))
    rows = []
    for i, c in enumerate(ordered):
        row = c.to_dict()
        row["win_rate"] = c.win_rate
        row["rank"] = i + 1
        rows.append(row)
    return rows


def compute_analytics(votes: List[VoteRecord], matchups: List[Matchup],
                      tz=timezone.utc) -> dict:
    """Totals plus a 24-slot histogram of votes by hour of day (in tz)."""
    by_hour = [0] * 24
    voters = set()
    for v in votes:
        voters.add(v.voter_id)
        hour = datetime.fromtimestamp(v.timestamp / 1000, tz=tz).hour
        by_hour[hour] += 1

    peak_hour = None
    if votes:
        peak_hour = max(range(24), key=lambda h: by_hour[h])

    return {
        "total_votes": len(votes),
        "total_matchups": len(matchups),
        "unique_voters": len(voters),
        "votes_by_hour": by_hour,
        "peak_hour": peak_hour,
    }


def competitor_names(competitors: List[Competitor]) -> Dict[str, str]:
    names = defaultdict(lambda: UNKNOWN_NAME)
    names.update({c.id: c.name for c in competitors})
    return names


def _iso(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts_ms % 1000:03d}Z"


def export_votes_csv(votes: List[VoteRecord], competitors: List[Competitor]) -> str:
    """Date,Winner,Loser,Influence. Deleted competitors show as Unknown."""
    names = competitor_names(competitors)
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_FIELDS)
    for v in votes:
        writer.writerow([_iso(v.timestamp), names[v.winner_id], names[v.loser_id],
                         v.influence_gained])
    return buf.getvalue()


def export_votes_json(votes: List[VoteRecord]) -> str:
    return json.dumps([v.to_dict() for v in votes], indent=2, ensure_ascii=False)
