#!/usr/bin/env python3
"""
Smoke test against a running service.

Opens a testing session for a business and sends each question, printing the
reply, confidence and whether the question counted as answered.

Usage:
    python scripts/ask.py 1 "What are your prices?"
    python scripts/ask.py 1 "Where are you?" "Do you deliver?" --base-url http://localhost:8000
"""
import sys
import argparse
import httpx


def ask(base_url: str, business_id: int, questions: list[str]) -> int:
    """Send questions through one session. Returns the number of failures."""
    failures = 0
    with httpx.Client(base_url=base_url, timeout=60.0) as client:
        response = client.post(
            "/api/testing/sessions",
            json={"business_id": business_id, "session_name": "cli smoke test"},
        )
        response.raise_for_status()
        session = response.json()
        print(f"Session {session['id']} opened for business {business_id}")
        print("=" * 60)

        for question in questions:
            response = client.post(
                f"/api/testing/sessions/{session['id']}/messages",
                json={"business_id": business_id, "message": question},
            )
            result = response.json()
            print(f"\nQ: {question}")
            if response.status_code != 200:
                failures += 1
                print(f"❌ {response.status_code}: {result.get('error') or result.get('detail')}")
                continue

            status = "answered" if result["is_answered"] else "unanswered"
            print(f"A: {result['response']}")
            print(f"   confidence={result['confidence_score']:.2f} {status} "
                  f"sources={len(result['context_sources'])} time={result['response_time_ms']}ms")

        stats = client.get(f"/api/testing/sessions/{session['id']}").json()["session"]
        print("\n" + "=" * 60)
        print(f"Messages: {stats['message_count']}  answered: {stats['answered_count']}  "
              f"unanswered: {stats['unanswered_count']}")

    return failures


def main():
    parser = argparse.ArgumentParser(description="Ask a running assistant some questions")
    parser.add_argument("business_id", type=int, help="Business to test")
    parser.add_argument("questions", nargs="+", help="Questions to send")
    parser.add_argument("--base-url", default="http://localhost:8000", help="Service URL")
    args = parser.parse_args()

    try:
        failures = ask(args.base_url, args.business_id, args.questions)
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        sys.exit(1)

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
