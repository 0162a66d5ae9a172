#!/usr/bin/env python3
"""
Portrait Clash Arena - CLI Client for Terminal Voting
Talks to the arena server over HTTP; `watch` follows the live Socket.IO feed.

Usage:
    python cli_client.py clash                 # random matchup, vote interactively
    python cli_client.py clash <idA> <idB>     # explicit matchup
    python cli_client.py leaderboard
    python cli_client.py history --export csv > history.csv
    python cli_client.py watch
"""

from dotenv import load_dotenv
load_dotenv()

import argparse
import os
import secrets
import sys
import time
from pathlib import Path

import requests
import socketio

SERVER_URL = os.getenv('ARENA_SERVER_URL', 'http://127.0.0.1:8000')
SESSION_FILE = Path.home() / '.portrait_clash_session'
TIMEOUT = 5


def voter_id() -> str:
    """ARENA_VOTER_ID, or a session id persisted in ~/.portrait_clash_session"""
    env_id = os.getenv('ARENA_VOTER_ID')
    if env_id:
        return env_id
    if SESSION_FILE.exists():
        sid = SESSION_FILE.read_text().strip()
        if sid:
            return sid
    sid = f"session_{secrets.token_hex(5)}"
    SESSION_FILE.write_text(sid)
    return sid


def api(method, path, **kwargs):
    headers = kwargs.pop('headers', {})
    headers.setdefault('X-Voter-Id', voter_id())
    admin_key = os.getenv('ARENA_ADMIN_KEY')
    if admin_key:
        headers.setdefault('X-Arena-Key', admin_key)
    response = requests.request(method, f"{SERVER_URL}{path}", headers=headers,
                                timeout=TIMEOUT, **kwargs)
    if response.status_code >= 500:
        response.raise_for_status()
    return response

# ============================================================================
# COMMANDS
# ============================================================================

def cmd_competitors(args):
    for c in api('GET', '/api/competitors').json():
        print(f"  {c['id']:>12}  {c['name']:24s}  {c['rating']:4d}  {c['tier']}")


def cmd_add(args):
    r = api('POST', '/api/competitors', json={
        'name': args.name, 'description': args.description, 'image_ref': args.image_ref})
    if r.status_code != 201:
        print(f"❌ {r.json().get('error')}")
        return 1
    print(f"✅ Added {r.json()['name']} ({r.json()['id']})")


def cmd_remove(args):
    r = api('DELETE', f'/api/competitors/{args.competitor_id}')
    if r.status_code != 204:
        print(f"❌ {r.json().get('error')}")
        return 1
    print(f"🗑️  Removed {args.competitor_id}")


def _prompt_undo(vote):
    """Offer the undo window in the terminal"""
    remaining = (vote['undo_expires_at'] - vote['timestamp']) / 1000
    print(f"↩️  Type 'u' + Enter within {remaining:.0f}s to undo (Enter to keep)")
    started = time.time()
    answer = input('> ').strip().lower()
    if answer != 'u':
        return
    if time.time() - started > remaining:
        print("⏰ Too late, the vote is final")
        return
    r = api('POST', f"/api/votes/{vote['id']}/undo")
    print("✅ Vote undone" if r.json().get('undone') else "⏰ Undo window closed")


def cmd_clash(args):
    body = {}
    if args.ids:
        if len(args.ids) != 2:
            print("❌ Give two competitor ids or none")
            return 1
        body = {'competitor_a_id': args.ids[0], 'competitor_b_id': args.ids[1]}

    r = api('POST', '/api/matchups', json=body)
    if r.status_code != 201:
        print(f"❌ {r.json().get('error')}")
        return 1
    matchup = api('GET', f"/api/matchups/{r.json()['id']}").json()
    a, b = matchup['competitor_a'], matchup['competitor_b']

    print('\n' + '='*50)
    print(f"⚔️  MATCHUP {matchup['id']}")
    print('='*50)
    print(f"  1) {a['name']}  ({a['rating']}, {a['tier']})")
    print(f"  2) {b['name']}  ({b['rating']}, {b['tier']})")

    choice = input('\nWho wins? [1/2] > ').strip()
    if choice not in ('1', '2'):
        print('👋 No vote cast')
        return
    winner = a if choice == '1' else b

    r = api('POST', '/api/votes', json={'matchup_id': matchup['id'], 'winner_id': winner['id']})
    data = r.json()
    if r.status_code != 201:
        print(f"❌ {data.get('error')}")
        return 1
    print(f"\n🗳️  Voted for {winner['name']}  (+{data['influence_gained']} influence)")
    for ach in data['unlocked_achievements']:
        print(f"🏅 Achievement unlocked: {ach['icon']} {ach['title']} (+{ach['points']})")
    _prompt_undo(data['vote'])


def cmd_undo(args):
    r = api('POST', f'/api/votes/{args.vote_id}/undo')
    print("✅ Vote undone" if r.json().get('undone') else "⏰ Vote not found or undo window closed")


def cmd_leaderboard(args):
    print("\n🏆 PORTRAIT CLASH - LEADERBOARD")
    print("=" * 60)
    for r in api('GET', '/api/leaderboard').json():
        rec = r['record']
        print(f"  #{r['rank']} {r['name']:20s}  ELO: {r['rating']:4d}  {r['tier']:10s}  "
              f"W/L: {rec['wins']}/{rec['losses']}  Winrate: {r['win_rate']}%")


def cmd_analytics(args):
    data = api('GET', '/api/analytics').json()
    print(f"\n📊 Total votes: {data['total_votes']}")
    print(f"   Unique voters: {data['unique_voters']}")
    print(f"   Matchups created: {data['total_matchups']}")
    peak = max(data['votes_by_hour']) or 1
    for hour, count in enumerate(data['votes_by_hour']):
        print(f"   {hour:02d}h {'█' * round(count / peak * 30)} {count}")


def cmd_history(args):
    if args.export:
        r = api('GET', '/api/voter/export', params={'format': args.export})
        sys.stdout.write(r.text)
        return
    account = api('GET', '/api/voter').json()
    print(f"\n{account['avatar_ref']} {account['display_name']}  "
          f"influence {account['influence']}  votes {account['vote_count']}")
    names = {c['id']: c['name'] for c in api('GET', '/api/competitors').json()}
    for v in api('GET', '/api/voter/history').json():
        print(f"  {v['id']}  {names.get(v['winner_id'], 'Unknown')} beat "
              f"{names.get(v['loser_id'], 'Unknown')}  +{v['influence_gained']}")


def cmd_watch(args):
    sio = socketio.Client()

    @sio.on('connect')
    def on_connect():
        print(f'✅ Connected to {SERVER_URL}')

    @sio.on('state_changed')
    def on_state_changed(data):
        print(f"🔄 Arena changed (revision {data['revision']})")

    @sio.on('disconnect')
    def on_disconnect():
        print('⚠️  Disconnected')

    sio.connect(SERVER_URL)
    try:
        sio.wait()
    except KeyboardInterrupt:
        print('\n\n👋 Goodbye!')
        sio.disconnect()

# ============================================================================
# MAIN
# ============================================================================

def build_parser():
    parser = argparse.ArgumentParser(description='Portrait Clash Arena CLI')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('competitors').set_defaults(func=cmd_competitors)

    p = sub.add_parser('add')
    p.add_argument('name')
    p.add_argument('description')
    p.add_argument('image_ref')
    p.set_defaults(func=cmd_add)

    p = sub.add_parser('remove')
    p.add_argument('competitor_id')
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser('clash')
    p.add_argument('ids', nargs='*')
    p.set_defaults(func=cmd_clash)

    p = sub.add_parser('undo')
    p.add_argument('vote_id')
    p.set_defaults(func=cmd_undo)

    sub.add_parser('leaderboard').set_defaults(func=cmd_leaderboard)
    sub.add_parser('analytics').set_defaults(func=cmd_analytics)

    p = sub.add_parser('history')
    p.add_argument('--export', choices=['csv', 'json'])
    p.set_defaults(func=cmd_history)

    sub.add_parser('watch').set_defaults(func=cmd_watch)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        return args.func(args) or 0
    except requests.ConnectionError:
        print(f"❌ Cannot reach arena server at {SERVER_URL}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
