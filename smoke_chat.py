"""Manual smoke client against a running server.

Usage: python smoke_chat.py <room_id> <token> [ws://localhost:8000]
"""
import asyncio
import json
import sys

import websockets


async def smoke(room_id: str, token: str, base_url: str) -> None:
    async with websockets.connect(f"{base_url}/ws/chat?token={token}") as ws:
        # Handshake ack lists the rooms this user was subscribed to
        ack = json.loads(await ws.recv())
        print(f"Authenticated: {ack}")

        await ws.send(json.dumps({
            "type": "send_message",
            "roomId": room_id,
            "content": "Hello from Python!",
            "clientMsgId": "smoke-1",
        }))

        # Skip presence chatter until our own message comes back
        while True:
            event = json.loads(await ws.recv())
            print(f"Received: {event}")
            if event["type"] in ("new_message", "error"):
                break


if __name__ == "__main__":
    if len(sys.argv) < 3:
        sys.exit(__doc__)
    asyncio.run(smoke(sys.argv[1], sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else "ws://localhost:8000"))
