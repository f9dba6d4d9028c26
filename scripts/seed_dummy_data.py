import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.quiz_analytics.storage import SessionStore, connect, init_database

# Configuration
DB_PATH = "data/quiz_analytics.db"
SHOP = "dummy-store.myshopify.com"
DAYS_BACK = 7

# Quizzes to seed
SCENARIOS = [
    {
        "quiz_id": "skin-type-finder",
        "daily_sessions": 40,
        "completion_rate": 0.7,  # Short quiz, most finish
        "known_customer_rate": 0.3,
        "questions": {
            "q-skin": ["dry", "oily", "combination"],
            "q-concern": ["acne", "aging", "redness"],
        },
    },
    {
        "quiz_id": "gift-guide",
        "daily_sessions": 15,
        "completion_rate": 0.35,  # Long quiz, many drop off
        "known_customer_rate": 0.1,
        "questions": {
            "q-budget": ["under-25", "25-50", "over-50"],
            "q-recipient": ["partner", "parent", "friend"],
            "q-style": ["classic", "modern"],
        },
    },
]


def seed_data():
    init_database(DB_PATH)
    conn = connect(DB_PATH)
    store = SessionStore(conn)

    print(f"Seeding quiz sessions for the last {DAYS_BACK} days...")

    now = datetime.now(timezone.utc)
    created = 0
    for day in range(DAYS_BACK):
        day_start = (now - timedelta(days=day)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )

        for scenario in SCENARIOS:
            for _ in range(scenario["daily_sessions"]):
                started_at = day_start + timedelta(seconds=random.randint(0, 86399))
                if started_at > now:
                    continue

                customer_id = None
                if random.random() < scenario["known_customer_rate"]:
                    customer_id = str(random.randint(1000, 1050))

                session = store.start_session(
                    SHOP,
                    scenario["quiz_id"],
                    started_at=started_at,
                    customer_id=customer_id,
                    page_url=f"https://{SHOP}/pages/{scenario['quiz_id']}",
                )
                created += 1

                answered_at = started_at
                for question_id, answers in scenario["questions"].items():
                    answered_at += timedelta(seconds=random.randint(5, 40))
                    store.record_answer(
                        session.session_id,
                        question_id,
                        random.choice(answers),
                        selected_at=answered_at,
                    )

                if random.random() < scenario["completion_rate"]:
                    store.complete_session(
                        session.session_id,
                        completed_at=answered_at + timedelta(seconds=10),
                    )

    conn.close()
    print(f"Success! Seeded {created} sessions into {DB_PATH}.")
    print("Orders come from Shopify; run scripts/run_sync.py to attribute them.")


if __name__ == "__main__":
    seed_data()
