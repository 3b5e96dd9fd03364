"""
Smoke test for the chat endpoint.

Posts a one-question conversation and prints the SSE frames as they arrive.
Run with: python scripts/chat_smoke.py [question] [--url http://localhost:8000]
"""
import argparse
import json
import sys

import httpx


def main():
    parser = argparse.ArgumentParser(description='Stream one answer from /api/chat')
    parser.add_argument('question', nargs='?', default='What is the Composition API?')
    parser.add_argument('--url', default='http://localhost:8000')
    parser.add_argument('--ip', default='127.0.0.1', help='Sent as X-Real-IP')
    args = parser.parse_args()

    payload = {"messages": [{"role": "user", "content": args.question}]}

    with httpx.Client(timeout=httpx.Timeout(60.0, connect=5.0)) as client:
        with client.stream(
            "POST",
            f"{args.url}/api/chat",
            json=payload,
            headers={"X-Real-IP": args.ip},
        ) as response:
            print(f"Status: {response.status_code}")
            print(f"Rate limit remaining: {response.headers.get('X-RateLimit-Remaining')}")

            if response.status_code != 200:
                response.read()
                print(response.text)
                return 1

            event = None
            for line in response.iter_lines():
                if line.startswith("event:"):
                    event = line[len("event:"):].strip()
                elif line.startswith("data:"):
                    data = json.loads(line[len("data:"):])
                    if event == "token":
                        print(data["text"], end="", flush=True)
                    elif event == "sources":
                        print(data["markdown"])
                    elif event == "error":
                        print(f"\n[stream error] {data['code']}: {data['error']}")
                        return 1
                    elif event == "done":
                        print("\n[done]")
    return 0


if __name__ == '__main__':
    sys.exit(main())
