"""
Flask web application for the bowling bracket and sidepot manager.

Routes load records from the YAML store, hand them to the bowling core and
persist whatever the core returns. Mutations run under the store lock so a
read-modify-write is atomic.
"""
import os
import random
from datetime import datetime
from functools import wraps

import yaml
from flask import Flask, abort, jsonify, request, session

from bowling.elimination import (
    STANDARD_BRACKET_SIZES,
    bracket_placements,
    generate_bracket_with_history,
    get_bracket_display,
    get_champion,
    record_match_result,
    resolve_byes,
    seed_bowlers,
    start_bracket,
    still_alive,
)
from bowling.errors import ConsistencyError, StructuralError, TieError, ValidationError
from bowling.ledger import add_transaction, create_money_ledger, get_ledger_by_bowler, get_ledger_summary, ledger_from_records
from bowling.models import (
    Bowler,
    BracketMatch,
    GameScore,
    HandicapConfig,
    Payout,
    PayoutStructure,
    PayoutTier,
    ScoringType,
    SeedingMethod,
    SidepotEntry,
    SidepotType,
    TransactionType,
)
from bowling.payouts import (
    STANDARD_PAYOUT_RATIOS,
    allocate_payouts,
    calculate_bracket_refunds,
    calculate_event_financials,
    calculate_payout_structure,
    calculate_sidepot_prize_pool,
    ordinal_suffix,
    summarize_payouts,
)
from bowling.scoring import MAX_PINS, calculate_bowler_stats, calculate_handicap, create_game_score, recalculate_average
from bowling.sidepots import (
    apply_eliminations,
    apply_pairings,
    attach_scores,
    calculate_doubles_standings,
    calculate_high_game_winner,
    calculate_high_series_winner,
    calculate_love_doubles_standings,
    calculate_sweeper_standings,
    doubles_pairings_from_entries,
    generate_mystery_doubles_pairings,
    run_full_eliminator,
)
from store import RecordNotFound, RecordStore

app = Flask(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.environ.get('BOWLING_DATA_DIR', os.path.join(BASE_DIR, 'data'))


def _get_or_create_secret_key() -> bytes:
    """Get SECRET_KEY from env, or generate and persist to file."""
    env_key = os.environ.get('SECRET_KEY')
    if env_key:
        return env_key.encode()
    key_file = os.path.join(DATA_DIR, '.secret_key')
    if os.path.exists(key_file):
        with open(key_file, 'rb') as f:
            return f.read()
    key = os.urandom(24)
    os.makedirs(DATA_DIR, exist_ok=True)
    with open(key_file, 'wb') as f:
        f.write(key)
    return key


app.secret_key = _get_or_create_secret_key()


def get_store() -> RecordStore:
    return RecordStore(DATA_DIR)


# ============================================
# SETTINGS
# ============================================

def get_default_settings():
    """Return default settings."""
    return {
        'handicap_base': 220,
        'handicap_percentage': 0.9,
        'max_handicap': None,
        'elimination_percentage': 0.5,
        'rematch_max_attempts': 100,
        'lineage_per_entry': 0,
        'shuffle_seed': None,
        'payout_ratios': {},
    }


def load_settings():
    """Load settings from YAML file, merging with defaults."""
    defaults = get_default_settings()
    path = os.path.join(DATA_DIR, 'settings.yaml')
    if not os.path.exists(path):
        return defaults
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        app.logger.warning(f'Failed to parse {path}: {e}')
        return defaults
    if not data:
        return defaults
    return {**defaults, **data}


def save_settings(settings):
    """Save settings to YAML file."""
    os.makedirs(DATA_DIR, exist_ok=True)
    with open(os.path.join(DATA_DIR, 'settings.yaml'), 'w', encoding='utf-8') as f:
        yaml.dump(settings, f, default_flow_style=False)


def _rng(settings) -> random.Random:
    seed = settings.get('shuffle_seed')
    return random.Random(seed) if seed is not None else random.Random()


def _ratio_table(settings):
    table = dict(STANDARD_PAYOUT_RATIOS)
    for size, ratios in (settings.get('payout_ratios') or {}).items():
        table[int(size)] = tuple(ratios)
    return table


# ============================================
# REQUEST HELPERS
# ============================================

def login_required(f):
    """Answer 401 if no organizer is logged in."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user' not in session:
            return jsonify({'success': False, 'error': 'Login required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('No data provided')
    return data


_REQUIRED = object()


def _int_field(data, name, default=_REQUIRED, minimum=None, maximum=None):
    """Integer field of a JSON body; None passes only when it is the default."""
    value = data.get(name, default)
    if value is _REQUIRED:
        raise ValidationError(f'{name} is required')
    if value is None and default is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{name} must be an integer')
    if minimum is not None and value < minimum:
        raise ValidationError(f'{name} must be >= {minimum}')
    if maximum is not None and value > maximum:
        raise ValidationError(f'{name} must be <= {maximum}')
    return value


def _enum_field(data, name, enum_cls, default=None):
    value = data.get(name, default)
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(e.value for e in enum_cls)
        raise ValidationError(f'Invalid {name}: {value} (expected one of {allowed})')


def _fraction_field(data, name, default):
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
        raise ValidationError(f'{name} must be a number between 0 and 1')
    return value


def _ratios_field(data):
    """Optional list of payout ratios; the core checks they are numbers summing to 1."""
    ratios = data.get('ratios')
    if ratios is not None and not isinstance(ratios, list):
        raise ValidationError('ratios must be a list of numbers')
    return ratios


def _text_field(data, name):
    value = str(data.get(name) or '').strip()
    if not value:
        raise ValidationError(f'{name} is required')
    return value


def _owned_event(store, event_id):
    """The event, if the logged-in organizer runs it."""
    event = store.require('events', event_id)
    if event.get('organizer') != session['user']:
        abort(403)
    return event


def _handicap_config(event) -> HandicapConfig:
    return HandicapConfig(
        base=event['handicap_base'],
        percentage=event['handicap_percentage'],
        max_handicap=event.get('max_handicap'),
    )


def _event_scores(store, event_id, bowler_ids=None):
    scores = [GameScore.from_dict(r) for r in store.query('scores', event_id=event_id)]
    if bowler_ids is not None:
        bowler_ids = set(bowler_ids)
        scores = [s for s in scores if s.bowler_id in bowler_ids]
    return scores


def _bowler_names(store):
    return {b['id']: b['name'] for b in store.load('bowlers')}


def _matches(bracket):
    return [BracketMatch.from_dict(m) for m in bracket.get('matches') or []]


def _record_transaction(store, bowler_id, type, amount, description, **refs):
    """Validate through the ledger and append one transaction record."""
    ledger = add_transaction(create_money_ledger(), bowler_id, type, amount, description, **refs)
    record = ledger.transactions[-1].to_dict()
    del record['id']
    return store.create('transactions', record)


def _record_payout(store, event_id, payout, description, bracket_id=None, sidepot_id=None):
    """Store an unpaid payout and its ledger transaction."""
    record = store.create('payouts', {
        'event_id': event_id,
        'bracket_id': bracket_id,
        'sidepot_id': sidepot_id,
        'bowler_id': payout.bowler_id,
        'place': payout.place,
        'amount': payout.amount,
        'paid': False,
        'paid_at': None,
    })
    _record_transaction(store, payout.bowler_id, TransactionType.PAYOUT, payout.amount, description,
                        event_id=event_id, bracket_id=bracket_id, sidepot_id=sidepot_id)
    return record


# ============================================
# ERROR HANDLERS
# ============================================

@app.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({'success': False, 'error': str(e), 'errors': e.errors}), 400


@app.errorhandler(TieError)
def handle_tie_error(e):
    return jsonify({'success': False, 'error': str(e), 'tied_ids': list(e.tied_ids)}), 400


@app.errorhandler(StructuralError)
def handle_structural_error(e):
    return jsonify({'success': False, 'error': str(e)}), 400


@app.errorhandler(ConsistencyError)
def handle_consistency_error(e):
    app.logger.error(f'Consistency failure on {request.path}: {e}')
    return jsonify({'success': False, 'error': str(e)}), 500


@app.errorhandler(RecordNotFound)
def handle_not_found(e):
    return jsonify({'success': False, 'error': str(e)}), 404


@app.errorhandler(403)
def handle_forbidden(e):
    return jsonify({'success': False, 'error': 'Not the organizer of this event'}), 403


# ============================================
# SETTINGS ROUTES
# ============================================

@app.route('/api/settings', methods=['GET'])
@login_required
def api_get_settings():
    return jsonify({'success': True, 'settings': load_settings()})


@app.route('/api/settings', methods=['POST'])
@login_required
def api_update_settings():
    """Update known settings keys; unknown keys are rejected."""
    data = _json_body()
    settings = load_settings()
    unknown = sorted(set(data) - set(get_default_settings()))
    if unknown:
        raise ValidationError(f'Unknown settings: {", ".join(unknown)}')
    settings.update(data)
    try:
        _ratio_table(settings)
    except (AttributeError, TypeError, ValueError):
        raise ValidationError('payout_ratios must map entry counts to lists of ratios')
    save_settings(settings)
    return jsonify({'success': True, 'settings': settings})


# ============================================
# BOWLERS
# ============================================

@app.route('/api/bowlers', methods=['GET'])
@login_required
def api_list_bowlers():
    return jsonify({'success': True, 'bowlers': get_store().load('bowlers')})


@app.route('/api/bowlers', methods=['POST'])
@login_required
def api_create_bowler():
    data = _json_body()
    bowler = {
        'name': _text_field(data, 'name'),
        'average': _int_field(data, 'average', minimum=0, maximum=MAX_PINS),
        'games_bowled': _int_field(data, 'games_bowled', default=0, minimum=0),
        'created_by': session['user'],
    }
    bowler = get_store().create('bowlers', bowler)
    return jsonify({'success': True, 'bowler': bowler})


@app.route('/api/bowlers/<bowler_id>', methods=['PATCH'])
@login_required
def api_update_bowler(bowler_id):
    data = _json_body()
    store = get_store()
    with store.lock:
        bowler = store.require('bowlers', bowler_id)
        if bowler.get('created_by') != session['user']:
            abort(403)
        changes = {}
        if 'name' in data:
            changes['name'] = _text_field(data, 'name')
        if 'average' in data:
            changes['average'] = _int_field(data, 'average', minimum=0, maximum=MAX_PINS)
        if 'games_bowled' in data:
            changes['games_bowled'] = _int_field(data, 'games_bowled', minimum=0)
        bowler = store.update('bowlers', bowler_id, **changes)
    return jsonify({'success': True, 'bowler': bowler})


# ============================================
# EVENTS
# ============================================

@app.route('/api/events', methods=['POST'])
@login_required
def api_create_event():
    """Create an event; handicap settings default to the global settings."""
    data = _json_body()
    settings = load_settings()

    event = {
        'name': _text_field(data, 'name'),
        'organizer': session['user'],
        'scoring_type': _enum_field(data, 'scoring_type', ScoringType, 'handicap').value,
        'num_games': _int_field(data, 'num_games', default=3, minimum=1),
        'handicap_base': _int_field(data, 'handicap_base', default=settings['handicap_base'], minimum=0),
        'handicap_percentage': _fraction_field(data, 'handicap_percentage', settings['handicap_percentage']),
        'max_handicap': _int_field(data, 'max_handicap', default=settings['max_handicap'], minimum=0),
        'lineage_per_entry': _int_field(data, 'lineage_per_entry', default=settings['lineage_per_entry'], minimum=0),
        'created_at': datetime.now().isoformat(),
    }
    event = get_store().create('events', event)
    app.logger.info(f'Event {event["id"]} created by {event["organizer"]}')
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>', methods=['GET'])
@login_required
def api_get_event(event_id):
    store = get_store()
    event = store.require('events', event_id)
    return jsonify({
        'success': True,
        'event': event,
        'bowlers': store.query('event_bowlers', event_id=event_id),
        'brackets': [{k: v for k, v in b.items() if k != 'matches'}
                     for b in store.query('brackets', event_id=event_id)],
        'sidepots': store.query('sidepots', event_id=event_id),
    })


@app.route('/api/events/<event_id>', methods=['PATCH'])
@login_required
def api_update_event(event_id):
    """
    Change an event's name, scoring or handicap settings.

    Handicaps already fixed for rostered bowlers stay as they are; the new
    settings apply to bowlers added afterwards.
    """
    data = _json_body()
    store = get_store()
    with store.lock:
        event = _owned_event(store, event_id)
        changes = {}
        if 'name' in data:
            changes['name'] = _text_field(data, 'name')
        if 'scoring_type' in data:
            changes['scoring_type'] = _enum_field(data, 'scoring_type', ScoringType).value
        if 'num_games' in data:
            played = max((s['game_number'] for s in store.query('scores', event_id=event_id)), default=1)
            changes['num_games'] = _int_field(data, 'num_games', minimum=played)
        if 'handicap_base' in data:
            changes['handicap_base'] = _int_field(data, 'handicap_base', minimum=0)
        if 'handicap_percentage' in data:
            changes['handicap_percentage'] = _fraction_field(data, 'handicap_percentage', None)
        if 'max_handicap' in data:
            changes['max_handicap'] = _int_field(data, 'max_handicap', default=None, minimum=0)
        if 'lineage_per_entry' in data:
            changes['lineage_per_entry'] = _int_field(data, 'lineage_per_entry', minimum=0)
        event = store.update('events', event['id'], **changes)
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>', methods=['DELETE'])
@login_required
def api_delete_event(event_id):
    """Delete an event with its roster, scores, brackets, sidepots and money records."""
    store = get_store()
    with store.lock:
        _owned_event(store, event_id)
        for bracket in store.query('brackets', event_id=event_id):
            store.delete_where('bracket_entries', bracket_id=bracket['id'])
        for sidepot in store.query('sidepots', event_id=event_id):
            store.delete_where('sidepot_entries', sidepot_id=sidepot['id'])
        for table in ('brackets', 'sidepots', 'scores', 'payouts', 'transactions', 'event_bowlers'):
            store.delete_where(table, event_id=event_id)
        store.delete('events', event_id)
    app.logger.info(f'Event {event_id} deleted by {session["user"]}')
    return jsonify({'success': True})


@app.route('/api/events/<event_id>/bowlers', methods=['POST'])
@login_required
def api_add_event_bowler(event_id):
    """Add a bowler to an event, fixing their average and handicap for it."""
    data = _json_body()
    store = get_store()
    with store.lock:
        event = _owned_event(store, event_id)
        bowler = store.require('bowlers', _text_field(data, 'bowler_id'))
        if store.find_one('event_bowlers', event_id=event_id, bowler_id=bowler['id']):
            raise ValidationError(f'{bowler["name"]} is already in this event')

        average = _int_field(data, 'average', default=bowler['average'], minimum=0, maximum=MAX_PINS)
        if event['scoring_type'] == ScoringType.HANDICAP.value:
            handicap = calculate_handicap(average, _handicap_config(event))
        else:
            handicap = 0

        record = store.create('event_bowlers', {
            'event_id': event_id,
            'bowler_id': bowler['id'],
            'name': bowler['name'],
            'average': average,
            'handicap': handicap,
        })
    return jsonify({'success': True, 'event_bowler': record})


@app.route('/api/events/<event_id>/bowlers/<bowler_id>', methods=['DELETE'])
@login_required
def api_remove_event_bowler(event_id, bowler_id):
    """Take a bowler off the roster; they must be withdrawn from brackets and sidepots first."""
    store = get_store()
    with store.lock:
        _owned_event(store, event_id)
        record = store.find_one('event_bowlers', event_id=event_id, bowler_id=bowler_id)
        if record is None:
            raise RecordNotFound('event_bowlers', bowler_id)

        bracket_ids = {b['id'] for b in store.query('brackets', event_id=event_id)}
        sidepot_ids = {s['id'] for s in store.query('sidepots', event_id=event_id)}
        in_bracket = any(e['bracket_id'] in bracket_ids
                         for e in store.query('bracket_entries', bowler_id=bowler_id))
        in_sidepot = any(e['sidepot_id'] in sidepot_ids
                         for e in store.query('sidepot_entries', bowler_id=bowler_id))
        if in_bracket or in_sidepot:
            raise StructuralError(f'Bowler {bowler_id} still has bracket or sidepot entries in this event')

        removed_scores = store.delete_where('scores', event_id=event_id, bowler_id=bowler_id)
        store.delete('event_bowlers', record['id'])
    app.logger.info(f'Bowler {bowler_id} removed from event {event_id} ({removed_scores} score(s) dropped)')
    return jsonify({'success': True, 'scores_removed': removed_scores})


@app.route('/api/events/<event_id>/scores', methods=['POST'])
@login_required
def api_record_scores(event_id):
    """
    Record one score or a list of scores.

    A bowler/game pair that already has a score is overwritten. Every score
    is validated before any is written.
    """
    data = _json_body()
    entries = data['scores'] if isinstance(data.get('scores'), list) else [data]
    store = get_store()

    with store.lock:
        event = _owned_event(store, event_id)
        roster = {eb['bowler_id']: eb for eb in store.query('event_bowlers', event_id=event_id)}

        validated = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValidationError('Each score must be an object')
            bowler_id = _text_field(entry, 'bowler_id')
            if bowler_id not in roster:
                raise StructuralError(f'Bowler {bowler_id} is not in this event')
            game_number = _int_field(entry, 'game_number', minimum=1, maximum=event['num_games'])
            pins = entry.get('pins')
            validated.append(create_game_score(bowler_id, event_id, game_number, pins,
                                               roster[bowler_id]['handicap']))

        saved = []
        for score in validated:
            existing = store.find_one('scores', event_id=event_id, bowler_id=score.bowler_id,
                                      game_number=score.game_number)
            if existing:
                saved.append(store.update('scores', existing['id'], **score.to_dict()))
            else:
                saved.append(store.create('scores', score.to_dict()))
    return jsonify({'success': True, 'scores': saved})


@app.route('/api/scores/<score_id>', methods=['DELETE'])
@login_required
def api_delete_score(score_id):
    store = get_store()
    with store.lock:
        score = store.require('scores', score_id)
        _owned_event(store, score['event_id'])
        store.delete('scores', score_id)
    return jsonify({'success': True})


@app.route('/api/events/<event_id>/bowlers/<bowler_id>/stats', methods=['GET'])
@login_required
def api_bowler_stats(event_id, bowler_id):
    store = get_store()
    store.require('events', event_id)
    bowler = store.require('bowlers', bowler_id)
    scores = _event_scores(store, event_id, [bowler_id])
    stats = calculate_bowler_stats(bowler_id, scores)
    return jsonify({
        'success': True,
        'stats': stats.to_dict(),
        'updated_average': recalculate_average(bowler['average'], bowler.get('games_bowled', 0),
                                               [s.pins for s in scores]),
    })


@app.route('/api/events/<event_id>/financials', methods=['GET'])
@login_required
def api_event_financials(event_id):
    store = get_store()
    event = store.require('events', event_id)

    brackets = []
    for bracket in store.query('brackets', event_id=event_id):
        financials = calculate_event_financials(_brackets_bought(store, bracket['id']), bracket['entry_fee'],
                                                event.get('lineage_per_entry', 0))
        brackets.append({'bracket_id': bracket['id'], 'name': bracket['name'], **financials.to_dict()})

    sidepots = []
    for sidepot in store.query('sidepots', event_id=event_id):
        entries = store.query('sidepot_entries', sidepot_id=sidepot['id'])
        sidepots.append({
            'sidepot_id': sidepot['id'],
            'type': sidepot['type'],
            'total_collected': len(entries) * sidepot['entry_fee'],
            'prize_pool': calculate_sidepot_prize_pool(len(entries), sidepot['entry_fee']),
        })

    totals = {key: sum(b[key] for b in brackets)
              for key in ('total_collected', 'lineage', 'prize_pool', 'expenses', 'profit')}
    totals['total_collected'] += sum(s['total_collected'] for s in sidepots)
    totals['prize_pool'] += sum(s['prize_pool'] for s in sidepots)

    return jsonify({'success': True, 'brackets': brackets, 'sidepots': sidepots, 'totals': totals})


# ============================================
# BRACKETS
# ============================================

@app.route('/api/events/<event_id>/brackets', methods=['POST'])
@login_required
def api_create_bracket(event_id):
    data = _json_body()
    bracket_size = _int_field(data, 'bracket_size', default=8)
    if bracket_size not in STANDARD_BRACKET_SIZES:
        sizes = ', '.join(str(s) for s in STANDARD_BRACKET_SIZES)
        raise ValidationError(f'Invalid bracket_size: {bracket_size} (expected one of {sizes})')

    store = get_store()
    with store.lock:
        _owned_event(store, event_id)
        bracket = store.create('brackets', {
            'event_id': event_id,
            'name': str(data.get('name') or 'Bracket').strip(),
            'entry_fee': _int_field(data, 'entry_fee', minimum=0),
            'bracket_size': bracket_size,
            'seeding_method': _enum_field(data, 'seeding_method', SeedingMethod, 'random').value,
            'status': 'open',
            'prize_pool': 0,
            'collisions': 0,
            'matches': [],
        })
    return jsonify({'success': True, 'bracket': bracket})


def _brackets_bought(store, bracket_id):
    return sum(e.get('brackets_paid', 1) for e in store.query('bracket_entries', bracket_id=bracket_id))


def _bracket_prize_pool(store, bracket, event):
    return calculate_event_financials(_brackets_bought(store, bracket['id']), bracket['entry_fee'],
                                      event.get('lineage_per_entry', 0)).prize_pool


@app.route('/api/brackets/<bracket_id>/entries', methods=['POST'])
@login_required
def api_enter_bracket(bracket_id):
    """
    Enter a bowler, buying one or more brackets at the entry fee each.

    The bracket seats bracket_size bowlers; brackets bought beyond what
    fills complete brackets show up in the refund plan.
    """
    data = _json_body()
    brackets_paid = _int_field(data, 'brackets_paid', default=1, minimum=1)
    store = get_store()
    with store.lock:
        bracket = store.require('brackets', bracket_id)
        event = _owned_event(store, bracket['event_id'])
        if bracket['status'] != 'open':
            raise StructuralError('Bracket has already started')

        bowler_id = _text_field(data, 'bowler_id')
        if not store.find_one('event_bowlers', event_id=event['id'], bowler_id=bowler_id):
            raise StructuralError(f'Bowler {bowler_id} is not in this event')
        if store.find_one('bracket_entries', bracket_id=bracket_id, bowler_id=bowler_id):
            raise ValidationError(f'Bowler {bowler_id} is already entered')
        if len(store.query('bracket_entries', bracket_id=bracket_id)) >= bracket['bracket_size']:
            raise StructuralError('Bracket is full')

        entry = store.create('bracket_entries', {
            'bracket_id': bracket_id,
            'bowler_id': bowler_id,
            'brackets_paid': brackets_paid,
            'amount_paid': bracket['entry_fee'] * brackets_paid,
        })
        if entry['amount_paid'] > 0:
            _record_transaction(store, bowler_id, TransactionType.ENTRY, entry['amount_paid'],
                                f'Entry: {bracket["name"]} x{brackets_paid}', event_id=event['id'],
                                bracket_id=bracket_id)
        bracket = store.update('brackets', bracket_id, prize_pool=_bracket_prize_pool(store, bracket, event))
    return jsonify({'success': True, 'entry': entry, 'prize_pool': bracket['prize_pool']})


@app.route('/api/brackets/<bracket_id>/entries/<bowler_id>', methods=['DELETE'])
@login_required
def api_withdraw_from_bracket(bracket_id, bowler_id):
    """Withdraw before the start; the entry fee is refunded."""
    store = get_store()
    with store.lock:
        bracket = store.require('brackets', bracket_id)
        event = _owned_event(store, bracket['event_id'])
        if bracket['status'] != 'open':
            raise StructuralError('Cannot withdraw after the bracket has started')

        entry = store.find_one('bracket_entries', bracket_id=bracket_id, bowler_id=bowler_id)
        if entry is None:
            raise RecordNotFound('bracket_entries', bowler_id)
        store.delete('bracket_entries', entry['id'])
        if entry['amount_paid'] > 0:
            _record_transaction(store, bowler_id, TransactionType.REFUND, entry['amount_paid'],
                                f'Withdrawal: {bracket["name"]}', event_id=event['id'], bracket_id=bracket_id)
        bracket = store.update('brackets', bracket_id, prize_pool=_bracket_prize_pool(store, bracket, event))
    return jsonify({'success': True, 'prize_pool': bracket['prize_pool']})


@app.route('/api/brackets/<bracket_id>/start', methods=['POST'])
@login_required
def api_start_bracket(bracket_id):
    """
    Seed the entrants, generate the matches and push the byes through.

    Random brackets avoid first-round pairings already played in this
    event's other brackets when they can.
    """
    store = get_store()
    settings = load_settings()
    with store.lock:
        bracket = store.require('brackets', bracket_id)
        event = _owned_event(store, bracket['event_id'])
        if bracket['status'] != 'open':
            raise StructuralError('Bracket has already started')

        roster = {eb['bowler_id']: eb for eb in store.query('event_bowlers', event_id=event['id'])}
        bowlers = [
            Bowler(id=e['bowler_id'], name=roster[e['bowler_id']]['name'],
                   average=roster[e['bowler_id']]['average'], handicap=roster[e['bowler_id']]['handicap'])
            for e in store.query('bracket_entries', bracket_id=bracket_id)
        ]
        method = SeedingMethod(bracket['seeding_method'])
        rng = _rng(settings)

        collisions = 0
        if method is SeedingMethod.RANDOM:
            prior = [m for other in store.query('brackets', event_id=event['id'])
                     if other['id'] != bracket_id for m in _matches(other)]
            result = generate_bracket_with_history([b.id for b in bowlers], bracket['bracket_size'], prior,
                                                   settings['rematch_max_attempts'], rng)
            matches = resolve_byes(result.matches)
            collisions = result.collisions
            if collisions:
                app.logger.warning(f'Bracket {bracket_id} started with {collisions} rematch(es)')
        else:
            seeded = seed_bowlers(bowlers, method, rng)
            matches = start_bracket([b.id for b in seeded], bracket['bracket_size'], seeded=True)

        status = 'completed' if get_champion(matches) else 'in_progress'
        bracket = store.update('brackets', bracket_id, status=status, collisions=collisions,
                               matches=[m.to_dict() for m in matches])
    app.logger.info(f'Bracket {bracket_id} started with {len(bowlers)} bowlers')
    return jsonify({'success': True, 'bracket': bracket})


@app.route('/api/brackets/<bracket_id>/matches/<match_id>/result', methods=['POST'])
@login_required
def api_record_match_result(bracket_id, match_id):
    data = _json_body()
    store = get_store()
    with store.lock:
        bracket = store.require('brackets', bracket_id)
        _owned_event(store, bracket['event_id'])
        if bracket['status'] != 'in_progress':
            raise StructuralError(f'Bracket is {bracket["status"]}, not in progress')

        result = record_match_result(_matches(bracket), match_id,
                                     _int_field(data, 'score_a'), _int_field(data, 'score_b'))
        changes = {'matches': [m.to_dict() for m in result.matches]}
        if result.ladder_complete:
            changes['status'] = 'completed'
            app.logger.info(f'Bracket {bracket_id} won by {get_champion(result.matches)}')
        bracket = store.update('brackets', bracket_id, **changes)
    return jsonify({'success': True, 'bracket': bracket, 'ladder_complete': result.ladder_complete})


@app.route('/api/brackets/<bracket_id>', methods=['GET'])
@login_required
def api_get_bracket(bracket_id):
    store = get_store()
    bracket = store.require('brackets', bracket_id)
    entries = store.query('bracket_entries', bracket_id=bracket_id)
    matches = _matches(bracket)
    return jsonify({
        'success': True,
        'bracket': bracket,
        'entries': entries,
        'display': get_bracket_display(matches, _bowler_names(store)),
        'still_alive': still_alive(matches, [e['bowler_id'] for e in entries]) if matches else [],
        'champion': get_champion(matches),
    })


@app.route('/api/brackets/<bracket_id>/refunds', methods=['GET'])
@login_required
def api_bracket_refunds(bracket_id):
    """Which entries are refunded if only complete brackets run."""
    store = get_store()
    bracket = store.require('brackets', bracket_id)
    entries = store.query('bracket_entries', bracket_id=bracket_id)
    refunds = calculate_bracket_refunds(
        [(e['bowler_id'], e.get('brackets_paid', 1)) for e in entries],
        bracket['entry_fee'],
        bracket['bracket_size'],
        sum(e.get('brackets_paid', 1) for e in entries),
    )
    return jsonify({
        'success': True,
        'refunds': [{
            'bowler_id': r.bowler_id,
            'brackets_paid': r.brackets_paid,
            'brackets_entered': r.brackets_entered,
            'refund_amount': r.refund_amount,
        } for r in refunds],
        'total_refund': sum(r.refund_amount for r in refunds),
    })


@app.route('/api/brackets/<bracket_id>/payouts', methods=['POST'])
@login_required
def api_pay_bracket(bracket_id):
    """Pay a completed bracket's prize pool by finishing place."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    ratios = _ratios_field(data)
    store = get_store()
    settings = load_settings()
    with store.lock:
        bracket = store.require('brackets', bracket_id)
        event = _owned_event(store, bracket['event_id'])
        if bracket['status'] == 'paid':
            raise StructuralError('Bracket has already been paid')
        if bracket['status'] != 'completed':
            raise StructuralError('Bracket is not complete')

        num_entries = len(store.query('bracket_entries', bracket_id=bracket_id))
        structure = calculate_payout_structure(bracket['prize_pool'], num_entries,
                                               custom_ratios=ratios,
                                               ratio_table=_ratio_table(settings))
        payouts = allocate_payouts(structure, bracket_placements(_matches(bracket)))

        records = [
            _record_payout(store, event['id'], payout,
                           f'{payout.place}{ordinal_suffix(payout.place)} place: {bracket["name"]}',
                           bracket_id=bracket_id)
            for payout in payouts
        ]
        store.update('brackets', bracket_id, status='paid')
    app.logger.info(f'Bracket {bracket_id} paid {structure.total_distributed} to {len(records)} bowler(s)')
    return jsonify({
        'success': True,
        'tiers': [{'place': t.place, 'amount': t.amount, 'percentage': t.percentage} for t in structure.tiers],
        'payouts': records,
    })


# ============================================
# SIDEPOTS
# ============================================

@app.route('/api/events/<event_id>/sidepots', methods=['POST'])
@login_required
def api_create_sidepot(event_id):
    data = _json_body()
    store = get_store()
    percentage = _fraction_field(data, 'elimination_percentage', load_settings()['elimination_percentage'])

    with store.lock:
        _owned_event(store, event_id)
        sidepot = store.create('sidepots', {
            'event_id': event_id,
            'type': _enum_field(data, 'type', SidepotType).value,
            'entry_fee': _int_field(data, 'entry_fee', minimum=0),
            'elimination_percentage': percentage,
            'status': 'open',
        })
    return jsonify({'success': True, 'sidepot': sidepot})


def _enter_sidepot(store, sidepot, event, bowler_id, partner_id=None):
    if not store.find_one('event_bowlers', event_id=event['id'], bowler_id=bowler_id):
        raise StructuralError(f'Bowler {bowler_id} is not in this event')
    if store.find_one('sidepot_entries', sidepot_id=sidepot['id'], bowler_id=bowler_id):
        raise ValidationError(f'Bowler {bowler_id} is already entered')

    entry = store.create('sidepot_entries', {
        'sidepot_id': sidepot['id'],
        **SidepotEntry(bowler_id=bowler_id, partner_id=partner_id).to_dict(),
    })
    if sidepot['entry_fee'] > 0:
        _record_transaction(store, bowler_id, TransactionType.ENTRY, sidepot['entry_fee'],
                            f'Entry: {sidepot["type"]} sidepot', event_id=event['id'], sidepot_id=sidepot['id'])
    return entry


@app.route('/api/sidepots/<sidepot_id>/entries', methods=['POST'])
@login_required
def api_enter_sidepot(sidepot_id):
    """Enter a bowler; love doubles enters both partners together."""
    data = _json_body()
    store = get_store()
    with store.lock:
        sidepot = store.require('sidepots', sidepot_id)
        event = _owned_event(store, sidepot['event_id'])
        if sidepot['status'] != 'open':
            raise StructuralError('Sidepot is already complete')

        bowler_id = _text_field(data, 'bowler_id')
        if sidepot['type'] == SidepotType.LOVE_DOUBLES.value:
            partner_id = _text_field(data, 'partner_id')
            if partner_id == bowler_id:
                raise StructuralError(f'Bowler {bowler_id} cannot partner themselves')
            entries = [_enter_sidepot(store, sidepot, event, bowler_id, partner_id),
                       _enter_sidepot(store, sidepot, event, partner_id, bowler_id)]
        else:
            entries = [_enter_sidepot(store, sidepot, event, bowler_id)]
    return jsonify({'success': True, 'entries': entries})


@app.route('/api/sidepots/<sidepot_id>/entries/<bowler_id>', methods=['DELETE'])
@login_required
def api_withdraw_from_sidepot(sidepot_id, bowler_id):
    """
    Withdraw before the sidepot completes; the entry fee is refunded.

    A love doubles team leaves together. A withdrawn mystery doubles
    bowler leaves their drawn partner unpaired.
    """
    store = get_store()
    with store.lock:
        sidepot = store.require('sidepots', sidepot_id)
        event = _owned_event(store, sidepot['event_id'])
        if sidepot['status'] != 'open':
            raise StructuralError('Cannot withdraw from a completed sidepot')

        entry = store.find_one('sidepot_entries', sidepot_id=sidepot_id, bowler_id=bowler_id)
        if entry is None:
            raise RecordNotFound('sidepot_entries', bowler_id)
        leaving = [entry]
        partner = None
        if entry.get('partner_id'):
            partner = store.find_one('sidepot_entries', sidepot_id=sidepot_id, bowler_id=entry['partner_id'])
        if partner and sidepot['type'] == SidepotType.LOVE_DOUBLES.value:
            leaving.append(partner)
        elif partner:
            store.update('sidepot_entries', partner['id'], partner_id=None)

        for record in leaving:
            store.delete('sidepot_entries', record['id'])
            if sidepot['entry_fee'] > 0:
                _record_transaction(store, record['bowler_id'], TransactionType.REFUND, sidepot['entry_fee'],
                                    f'Withdrawal: {sidepot["type"]} sidepot', event_id=event['id'],
                                    sidepot_id=sidepot_id)
    return jsonify({'success': True, 'withdrawn': [r['bowler_id'] for r in leaving]})


@app.route('/api/sidepots/<sidepot_id>/pairings', methods=['POST'])
@login_required
def api_pair_sidepot(sidepot_id):
    """Draw mystery doubles partners among the entrants."""
    store = get_store()
    with store.lock:
        sidepot = store.require('sidepots', sidepot_id)
        _owned_event(store, sidepot['event_id'])
        if sidepot['type'] != SidepotType.MYSTERY_DOUBLES.value:
            raise StructuralError('Only mystery doubles are drawn')
        if sidepot['status'] != 'open':
            raise StructuralError('Sidepot is already complete')

        records = store.query('sidepot_entries', sidepot_id=sidepot_id)
        entries = [SidepotEntry.from_dict(r) for r in records]
        pairings = generate_mystery_doubles_pairings([e.bowler_id for e in entries], _rng(load_settings()))
        for record, entry in zip(records, apply_pairings(entries, pairings)):
            store.update('sidepot_entries', record['id'], partner_id=entry.partner_id)
    return jsonify({'success': True, 'pairings': [list(p) for p in pairings]})


def _sidepot_context(store, sidepot):
    event = store.require('events', sidepot['event_id'])
    records = store.query('sidepot_entries', sidepot_id=sidepot['id'])
    entries = [SidepotEntry.from_dict(r) for r in records]
    scores = _event_scores(store, event['id'], [e.bowler_id for e in entries])
    return event, records, entries, scores


def _run_eliminator(sidepot, event, entries, scores):
    """Eliminator rounds, honouring bowlers the organizer has already taken out."""
    removed = {e.bowler_id: e.eliminated_in_game for e in entries if e.is_eliminated}
    return run_full_eliminator([e.bowler_id for e in entries], scores, event['num_games'],
                               sidepot['elimination_percentage'], removed=removed)


def _sidepot_standings(sidepot, event, entries, scores):
    """Type-specific standings as plain data."""
    kind = SidepotType(sidepot['type'])

    if kind is SidepotType.HIGH_GAME:
        games = sorted({s.game_number for s in scores})
        return [{
            'game_number': r.game_number,
            'winner_ids': list(r.winner_ids),
            'winner_score': r.winner_score,
            'is_tie': r.is_tie,
        } for r in (calculate_high_game_winner(scores, g) for g in games)]

    if kind is SidepotType.HIGH_SERIES:
        if not scores:
            return None
        result = calculate_high_series_winner(scores)
        return {'winner_ids': list(result.winner_ids), 'total_pins': result.total_pins, 'is_tie': result.is_tie}

    if kind in (SidepotType.MYSTERY_DOUBLES, SidepotType.LOVE_DOUBLES):
        pairings = doubles_pairings_from_entries(entries)
        if not pairings:
            return []
        if kind is SidepotType.LOVE_DOUBLES:
            teams = calculate_love_doubles_standings(pairings, scores)
        else:
            teams = calculate_doubles_standings(pairings, scores)
        return [{'bowler1_id': t.bowler1_id, 'bowler2_id': t.bowler2_id, 'combined_score': t.combined_score}
                for t in teams]

    if kind is SidepotType.ELIMINATOR:
        rounds = _run_eliminator(sidepot, event, entries, scores)
        return {
            'rounds': [{
                'game_number': r.game_number,
                'cut_score': r.cut_score,
                'still_in': list(r.still_in),
                'eliminated': list(r.eliminated),
            } for r in rounds],
            'entries': [e.to_dict() for e in apply_eliminations(attach_scores(entries, scores), rounds)],
        }

    return [{'bowler_id': s.bowler_id, 'total_pins': s.total_pins, 'position': s.position}
            for s in calculate_sweeper_standings(scores)]


def _sidepot_payouts(sidepot, event, entries, scores, prize_pool):
    """(Payout, description) pairs for a finished sidepot."""
    kind = SidepotType(sidepot['type'])
    if not scores:
        raise StructuralError('No scores recorded for this sidepot')
    label = kind.value.replace('_', ' ')

    if kind is SidepotType.HIGH_GAME:
        # Even split per bowled game, odd units to the first game
        games = sorted({s.game_number for s in scores})
        share, remainder = divmod(prize_pool, len(games))
        awards = []
        for index, game in enumerate(games):
            amount = share + (remainder if index == 0 else 0)
            game_pot = PayoutStructure(amount, (PayoutTier(place=1, amount=amount, percentage=1 / len(games)),))
            winner = calculate_high_game_winner(scores, game)
            awards.extend((p, f'High game {game}')
                          for p in allocate_payouts(game_pot, [(b, 1) for b in winner.winner_ids]))
        return awards

    if kind is SidepotType.SWEEPER:
        structure = calculate_payout_structure(prize_pool, len(entries))
        placements = [(s.bowler_id, s.position) for s in calculate_sweeper_standings(scores)]
    else:
        structure = calculate_payout_structure(prize_pool, len(entries), custom_ratios=(1.0,))
        if kind is SidepotType.HIGH_SERIES:
            winner_ids = calculate_high_series_winner(scores).winner_ids
        elif kind is SidepotType.ELIMINATOR:
            winner_ids = _run_eliminator(sidepot, event, entries, scores)[-1].still_in
        else:
            teams = calculate_doubles_standings(doubles_pairings_from_entries(entries), scores)
            best = teams[0].combined_score
            winner_ids = [b for t in teams if t.combined_score == best for b in (t.bowler1_id, t.bowler2_id)]
        placements = [(b, 1) for b in winner_ids]

    return [(p, f'{p.place}{ordinal_suffix(p.place)} place: {label}')
            for p in allocate_payouts(structure, placements)]


@app.route('/api/sidepots/<sidepot_id>/standings', methods=['GET'])
@login_required
def api_sidepot_standings(sidepot_id):
    store = get_store()
    sidepot = store.require('sidepots', sidepot_id)
    event, _, entries, scores = _sidepot_context(store, sidepot)
    return jsonify({
        'success': True,
        'sidepot': sidepot,
        'prize_pool': calculate_sidepot_prize_pool(len(entries), sidepot['entry_fee']),
        'standings': _sidepot_standings(sidepot, event, entries, scores),
    })


@app.route('/api/sidepots/<sidepot_id>/eliminations', methods=['POST'])
@login_required
def api_eliminate_bowler(sidepot_id):
    """Take an eliminator bowler out by hand from the given game on."""
    data = _json_body()
    store = get_store()
    with store.lock:
        sidepot = store.require('sidepots', sidepot_id)
        event = _owned_event(store, sidepot['event_id'])
        if sidepot['type'] != SidepotType.ELIMINATOR.value:
            raise StructuralError('Only eliminator bowlers can be eliminated')
        if sidepot['status'] != 'open':
            raise StructuralError('Sidepot is already complete')

        bowler_id = _text_field(data, 'bowler_id')
        game_number = _int_field(data, 'game_number', minimum=1, maximum=event['num_games'])
        entry = store.find_one('sidepot_entries', sidepot_id=sidepot_id, bowler_id=bowler_id)
        if entry is None:
            raise RecordNotFound('sidepot_entries', bowler_id)
        entry = store.update('sidepot_entries', entry['id'], is_eliminated=True, eliminated_in_game=game_number)
    app.logger.info(f'Bowler {bowler_id} eliminated by hand from {sidepot_id} in game {game_number}')
    return jsonify({'success': True, 'entry': entry})


@app.route('/api/sidepots/<sidepot_id>/complete', methods=['POST'])
@login_required
def api_complete_sidepot(sidepot_id):
    """Close the sidepot and pay its winners."""
    store = get_store()
    with store.lock:
        sidepot = store.require('sidepots', sidepot_id)
        _owned_event(store, sidepot['event_id'])
        if sidepot['status'] != 'open':
            raise StructuralError('Sidepot is already complete')

        event, records, entries, scores = _sidepot_context(store, sidepot)
        prize_pool = calculate_sidepot_prize_pool(len(entries), sidepot['entry_fee'])
        awards = _sidepot_payouts(sidepot, event, entries, scores, prize_pool)

        if sidepot['type'] == SidepotType.ELIMINATOR.value:
            entries = apply_eliminations(entries, _run_eliminator(sidepot, event, entries, scores))
        for record, entry in zip(records, attach_scores(entries, scores)):
            store.update('sidepot_entries', record['id'], **entry.to_dict())

        payouts = [_record_payout(store, event['id'], payout, description, sidepot_id=sidepot_id)
                   for payout, description in awards]
        sidepot = store.update('sidepots', sidepot_id, status='completed', prize_pool=prize_pool)
    return jsonify({'success': True, 'sidepot': sidepot, 'payouts': payouts})


# ============================================
# PAYOUT TRACKING
# ============================================

@app.route('/api/payouts/<payout_id>/paid', methods=['POST'])
@login_required
def api_mark_payout_paid(payout_id):
    """Record that the prize money was handed over."""
    store = get_store()
    with store.lock:
        payout = store.require('payouts', payout_id)
        _owned_event(store, payout['event_id'])
        if payout.get('paid'):
            raise StructuralError(f'Payout {payout_id} is already marked paid')
        payout = store.update('payouts', payout_id, paid=True, paid_at=datetime.now().isoformat())
    return jsonify({'success': True, 'payout': payout})


@app.route('/api/events/<event_id>/payouts', methods=['GET'])
@login_required
def api_event_payouts(event_id):
    store = get_store()
    store.require('events', event_id)
    records = sorted(store.query('payouts', event_id=event_id),
                     key=lambda p: (p['bracket_id'] or '', p['sidepot_id'] or '', p['place']))
    summary = summarize_payouts(Payout.from_dict(r) for r in records)
    return jsonify({'success': True, 'payouts': records, 'summary': summary.to_dict()})


@app.route('/api/events/<event_id>/bowlers/<bowler_id>/owed', methods=['GET'])
@login_required
def api_bowler_owed(event_id, bowler_id):
    """Prize money awarded to a bowler in the event and how much is still to hand over."""
    store = get_store()
    store.require('events', event_id)
    records = store.query('payouts', event_id=event_id, bowler_id=bowler_id)
    summary = summarize_payouts(Payout.from_dict(r) for r in records)
    return jsonify({
        'success': True,
        'total': summary.total_amount,
        'paid': summary.paid_amount,
        'owed': summary.pending_amount,
        'payouts': records,
    })


# ============================================
# LEDGER
# ============================================

@app.route('/api/events/<event_id>/ledger', methods=['GET'])
@login_required
def api_event_ledger(event_id):
    store = get_store()
    store.require('events', event_id)
    ledger = ledger_from_records(store.query('transactions', event_id=event_id))
    return jsonify({
        'success': True,
        'summary': get_ledger_summary(ledger),
        'by_bowler': {b: balance.to_dict() for b, balance in get_ledger_by_bowler(ledger).items()},
        'transactions': [t.to_dict() for t in ledger.transactions],
    })


@app.route('/api/events/<event_id>/refunds', methods=['POST'])
@login_required
def api_manual_refund(event_id):
    data = _json_body()
    store = get_store()
    with store.lock:
        _owned_event(store, event_id)
        bowler_id = _text_field(data, 'bowler_id')
        store.require('bowlers', bowler_id)
        record = _record_transaction(
            store, bowler_id, TransactionType.REFUND, data.get('amount'),
            str(data.get('description') or 'Manual refund'),
            event_id=event_id, bracket_id=data.get('bracket_id'), sidepot_id=data.get('sidepot_id'),
        )
    app.logger.info(f'Manual refund of {record["amount"]} to {bowler_id} in event {event_id}')
    return jsonify({'success': True, 'transaction': record})


if __name__ == '__main__':
    app.run(debug=True, port=5000)
