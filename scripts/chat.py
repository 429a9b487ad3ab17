#!/usr/bin/env python3
"""
Interactive CLI client for the knowledge base.

Checks GET /api/health, then sends each question typed at the prompt to
POST /api/ask and prints the answer. Questions are independent: the server
keeps no conversation history.

Usage:
    python scripts/chat.py

    # Or override the API URL:
    API_URL=http://my-server:9000 python scripts/chat.py

Special commands:
    quit / exit  -- End the session
    stats        -- Show how many chunks each source has
"""

import os
import sys

import httpx

# ANSI escape codes; \033[0m resets the style.
BOLD = "\033[1m"
DIM = "\033[2m"
CYAN = "\033[36m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"

API_URL = os.environ.get("API_URL", "http://localhost:8000")


def health_check(client: httpx.Client) -> int | None:
    """Return the number of stored chunks, or None if the API is unreachable."""
    try:
        resp = client.get(f"{API_URL}/api/health")
        resp.raise_for_status()
        return resp.json().get("chunks", 0)
    except (httpx.HTTPError, ValueError) as e:
        print(f"{RED}Health check failed: {e}{RESET}")
        return None


def show_stats(client: httpx.Client) -> None:
    try:
        resp = client.get(f"{API_URL}/api/stats")
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        print(f"{RED}Error: {e}{RESET}\n")
        return
    print(f"{DIM}--- {data['total_chunks']} chunks ---{RESET}")
    for source, n in data.get("chunks_by_source", {}).items():
        print(f"{DIM}  {source}: {n}{RESET}")
    print()


def main() -> None:
    # Generation can be slow; match the server's own generation timeout.
    client = httpx.Client(timeout=120.0)

    print(f"{BOLD}{CYAN}=== Knowledge Base -- CLI ==={RESET}")
    print(f"API: {API_URL}")
    print()

    print("Checking API health...", end=" ")
    chunks = health_check(client)
    if chunks is None:
        print(f"\n{RED}Could not reach the API at {API_URL}{RESET}")
        print("Start it with: uvicorn knowledge_rag.main:app --port 8000")
        sys.exit(1)
    print(f"{GREEN}OK{RESET} ({chunks} chunks)")
    if chunks == 0:
        print(f"{YELLOW}The knowledge base is empty. Load it with: curl -X POST {API_URL}/api/load_data{RESET}")
    print()
    print(f"Type your questions below. Commands: {BOLD}stats{RESET}, {BOLD}quit{RESET} (exit)")
    print()

    while True:
        try:
            question = input(f"{GREEN}You:{RESET} ").strip()
        except (EOFError, KeyboardInterrupt):
            print(f"\n{DIM}Goodbye!{RESET}")
            break

        if not question:
            continue

        if question.lower() in ("quit", "exit"):
            print(f"{DIM}Goodbye!{RESET}")
            break
        if question.lower() == "stats":
            show_stats(client)
            continue

        try:
            resp = client.post(f"{API_URL}/api/ask", json={"question": question})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.json().get("detail", str(e)) if e.response.headers.get("content-type", "").startswith("application/json") else str(e)
            print(f"{RED}Error ({e.response.status_code}): {detail}{RESET}\n")
            continue
        except (httpx.HTTPError, ValueError) as e:
            print(f"{RED}Error: {e}{RESET}\n")
            continue

        answer = data.get("answer", "(no answer)")
        print(f"\n{BOLD}{CYAN}Bot:{RESET} {answer}")
        print()


if __name__ == "__main__":
    main()
