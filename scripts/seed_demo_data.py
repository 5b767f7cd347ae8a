# scripts/seed_demo_data.py

import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(ROOT)

from app.demo_data import seed_demo_data, DEMO_CLIENT_PASSWORD, DEMO_TRAINER_PASSWORD


def run():
    created = seed_demo_data()
    print("Demo data ready:")
    print(f"  Trainers ({DEMO_TRAINER_PASSWORD}): {', '.join(created['trainers'])}")
    print(f"  Clients ({DEMO_CLIENT_PASSWORD}): {', '.join(created['clients'])}")


if __name__ == "__main__":
    run()
