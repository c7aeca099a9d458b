#!/usr/bin/env python3
"""
Seed a demo election into the configured ballot store.

Creates the schema, registers candidates for each position and a batch of
voters, then optionally casts random ballots through the casting transaction
so the results and stats endpoints have data to show.
"""
import argparse
import random
import sys
import time

from election_services.aggregation import ResultsAggregator
from election_services.casting import BallotCaster
from election_services.config import settings
from election_services.shared.errors import BallotError
from election_services.storage import build_store

DEMO_CANDIDATES = {
    'President': ['Ama Owusu', 'Kwame Asante', 'Efua Mensah'],
    'Secretary': ['Kofi Boateng', 'Abena Darko'],
    'Treasurer': ['Yaw Adjei', 'Akosua Frimpong'],
}


def seed_candidates(store):
    """Register the demo candidates, returning them grouped by position."""
    print("Registering candidates...")
    for position, names in DEMO_CANDIDATES.items():
        for name in names:
            store.add_candidate(name, position)
    grouped = store.list_candidates_by_position()
    for position, candidates in grouped.items():
        print(f"  {position}: {len(candidates)} candidates")
    return grouped


def seed_voters(store, count: int, verified_ratio: float):
    """Register voters; a share of them are already identity-verified."""
    print(f"\nRegistering {count:,} voters...")
    voter_ids = []
    verified = 0
    for i in range(count):
        voter_id = f"DEMO-{i:06d}"
        is_verified = random.random() < verified_ratio
        try:
            store.register_voter(voter_id, full_name=f"Demo Voter {i}", is_verified=is_verified)
        except ValueError:
            print(f"  Voter {voter_id} already registered, skipping")
            continue
        voter_ids.append(voter_id)
        verified += int(is_verified)

    print(f"✅ Registered {len(voter_ids):,} voters ({verified:,} verified)")
    return voter_ids


def cast_random_ballots(store, voter_ids, grouped, turnout: float):
    """Cast random ballots for a share of the voters."""
    caster = BallotCaster(store)
    accepted = rejected = 0
    start_time = time.time()

    for voter_id in voter_ids:
        if random.random() >= turnout:
            continue
        ballot = [
            (position, random.choice(candidates).candidate_id)
            for position, candidates in grouped.items()
        ]
        try:
            caster.cast_ballots(voter_id, ballot)
            accepted += 1
        except BallotError as e:
            rejected += 1
            if rejected <= 5:
                print(f"  {voter_id}: {e.message}")

    elapsed = time.time() - start_time
    print(f"\n✅ Cast {accepted:,} ballots in {elapsed:.1f}s ({rejected:,} rejected)")


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a demo election")
    parser.add_argument('--voters', type=int, default=500, help="Number of voters to register")
    parser.add_argument('--verified-ratio', type=float, default=0.9, help="Share of verified voters")
    parser.add_argument('--turnout', type=float, default=0.0, help="Share of voters that cast a ballot")
    parser.add_argument('--seed', type=int, default=None, help="Random seed")
    args = parser.parse_args()

    random.seed(args.seed)

    print("=" * 60)
    print(f"SEEDING DEMO ELECTION ({settings.STORAGE_BACKEND} store)")
    print("=" * 60)

    store = build_store(settings)
    try:
        grouped = seed_candidates(store)
        voter_ids = seed_voters(store, args.voters, args.verified_ratio)
        if args.turnout > 0:
            cast_random_ballots(store, voter_ids, grouped, args.turnout)

        stats = ResultsAggregator(store).compute_summary_stats()
        print("\n" + "=" * 60)
        print(f"Voters: {stats.total_voters:,} ({stats.total_eligible_voters:,} eligible)")
        print(f"Ballot entries: {stats.total_votes:,} from {stats.unique_voters:,} voters")
        print(f"Turnout: {stats.turnout_percent}%")
        print("=" * 60)
    except BallotError as e:
        print(f"❌ Seeding failed: {e.message}")
        return 1
    finally:
        store.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
