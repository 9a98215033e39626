#!/usr/bin/env python3
"""
Bracket night from the command line.

Reads a YAML roster, draws the brackets and prints them with their payout
tables, followed by any refunds owed for entries that do not fill a bracket.

Usage:
    python src/main.py roster.yaml
    python src/main.py roster.yaml --seeding by_average --entry-fee 5 --seed 42

Roster format:
    bracket_size: 8
    entry_fee: 5
    bowlers:
      - {id: b1, name: Alice, average: 190}
      - {id: b2, name: Bob, average: 165}
"""
import argparse
import random
import sys

import yaml

from bowling.elimination import get_bracket_display, seed_bowlers, start_bracket
from bowling.errors import BowlingError
from bowling.models import Bowler, SeedingMethod
from bowling.payouts import calculate_bracket_refunds, calculate_payout_structure, ordinal_suffix
from bowling.scoring import apply_handicap_to_all


def load_roster(file_path):
    with open(file_path, mode='r', encoding='utf-8') as file:
        data = yaml.safe_load(file) or {}
    bowlers = [Bowler.from_dict(b) for b in data.get('bowlers', [])]
    return data, bowlers


def print_bracket(display):
    for round_name, matches in display['rounds'].items():
        print(f"\n{round_name}")
        for match in matches:
            bowler_a, bowler_b = (name or 'TBD' for name in match['bowlers'])
            line = f"  {bowler_a} vs {bowler_b}"
            if match['winner']:
                line += f"  -> {match['winner']}"
            print(line)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Draw a handicap bracket from a YAML roster')
    parser.add_argument('roster', help='YAML roster file')
    parser.add_argument('--bracket-size', type=int, help='Bracket size (default: roster value or 8)')
    parser.add_argument('--entry-fee', type=int, help='Entry fee per bowler (default: roster value or 0)')
    parser.add_argument(
        '--seeding',
        choices=[m.value for m in SeedingMethod],
        help='Seeding method (default: roster value or random)'
    )
    parser.add_argument('--seed', type=int, help='Random seed for a reproducible draw')
    args = parser.parse_args(argv)

    data, bowlers = load_roster(args.roster)
    bracket_size = args.bracket_size or data.get('bracket_size', 8)
    entry_fee = args.entry_fee if args.entry_fee is not None else data.get('entry_fee', 0)
    method = SeedingMethod(args.seeding or data.get('seeding', 'random'))
    rng = random.Random(args.seed if args.seed is not None else data.get('seed'))

    if not bowlers:
        print(f"No bowlers loaded. Check {args.roster}", file=sys.stderr)
        return 1

    # A short roster plays one bracket with byes; otherwise only full brackets run
    if len(bowlers) <= bracket_size:
        refunds = []
        groups = [bowlers]
    else:
        refunds = calculate_bracket_refunds([(b.id, 1) for b in bowlers], entry_fee, bracket_size, len(bowlers))
        refunds = [r for r in refunds if r.brackets_entered == 0]
        refunded = {r.bowler_id for r in refunds}
        playing = [b for b in bowlers if b.id not in refunded]
        groups = [playing[i:i + bracket_size] for i in range(0, len(playing), bracket_size)]

    names = {b.id: b.name for b in bowlers}
    for number, group in enumerate(groups, start=1):
        try:
            ordered = seed_bowlers(apply_handicap_to_all(group), method, rng)
            matches = start_bracket([b.id for b in ordered], bracket_size, rng,
                                    seeded=method is not SeedingMethod.RANDOM)
            structure = calculate_payout_structure(entry_fee * len(group), len(group))
        except BowlingError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        print(f"--- Bracket {number} ({len(group)} bowlers, size {bracket_size}, {method.value}) ---")
        print_bracket(get_bracket_display(matches, names))

        print(f"\n--- Payouts (prize pool {structure.total_prize_pool}) ---")
        for tier in structure.tiers:
            print(f"  {tier.place}{ordinal_suffix(tier.place)}: {tier.amount}")
        print()

    if refunds:
        print("--- Refunds ---")
        for refund in refunds:
            print(f"  {names[refund.bowler_id]}: {refund.refund_amount}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
