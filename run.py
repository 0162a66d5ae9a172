#!/usr/bin/env python3
"""
Clean start script for the Portrait Clash Arena server
"""
import os

from app import app, socketio, get_arena, start_watcher_once, DATA_DIR, ADMIN_KEY

if __name__ == '__main__':
    host = os.getenv('ARENA_HOST', '127.0.0.1')
    port = int(os.getenv('ARENA_PORT', 8000))

    print("\n" + "="*60)
    print("🖼️  PORTRAIT CLASH ARENA - STARTING")
    print("="*60)
    print(f"\n📁 Working directory: {os.getcwd()}")
    print(f"📁 Arena data: {DATA_DIR}")
    print(f"🌐 Server: http://{host}:{port}")
    if not ADMIN_KEY:
        print("⚠️  WARNING: ARENA_ADMIN_KEY not set, competitor edits are open to anyone")
    print("="*60)

    engine = get_arena()
    print(f"🏟️ {len(engine.list_competitors())} competitors loaded")
    start_watcher_once()

    print("\n⏳ Starting server...\n")
    socketio.run(
        app,
        host=host,
        port=port,
        debug=True,
        use_reloader=False,  # Reloader would start a second watcher
        allow_unsafe_werkzeug=True,
    )
