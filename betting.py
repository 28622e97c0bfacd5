"""
Betting arithmetic and status rules shared by the bet, prediction, wallet
and registration-request handlers.

Nothing in here touches Flask or the store, so handlers can price a bet or
validate a transition before any write happens.
"""

from functools import reduce

BET_TYPES = ("single", "multiple")

TERMINAL_RESULTS = ("won", "lost", "void")

# Bounds matching the numeric columns in schema.sql
MAX_SELECTIONS = 20
MAX_STAKE = 100_000
MAX_COMBINED_ODDS = 1_000_000

# machine -> {current_status: allowed next statuses}
TRANSITIONS = {
    "prediction": {
        "pending": TERMINAL_RESULTS,
    },
    "bet": {
        "pending": TERMINAL_RESULTS,
    },
    "registration_request": {
        "pending": ("approved", "rejected"),
        "approved": ("completed", "rejected"),
    },
}


class BettingError(ValueError):
    """Input that cannot be priced or settled."""


def can_transition(machine: str, current: str, new: str) -> bool:
    """
    One-way state machines:
      - prediction / bet: pending -> won | lost | void, terminal afterwards
      - registration_request: pending -> approved | rejected,
        approved -> completed | rejected
    """
    return new in TRANSITIONS[machine].get(current, ())


def allowed_from(machine: str, new: str) -> tuple:
    """Statuses from which `new` is reachable (used as the CAS precondition)."""
    return tuple(cur for cur, nexts in TRANSITIONS[machine].items() if new in nexts)


def parse_amount(value, field="stake"):
    # JSON true/false would otherwise pass as 1.0 / 0.0
    if isinstance(value, bool):
        raise BettingError(f"{field} must be a number")
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise BettingError(f"{field} must be a number")
    if amount != amount or amount in (float("inf"), float("-inf")):
        raise BettingError(f"{field} must be a number")
    return amount


def parse_stake(value, field="stake"):
    """A positive amount in whole cents, up to MAX_STAKE."""
    amount = parse_amount(value, field)
    if round(amount, 2) != amount:
        raise BettingError(f"{field} must have at most 2 decimal places")
    if amount <= 0:
        raise BettingError(f"{field} must be greater than 0")
    if amount > MAX_STAKE:
        raise BettingError(f"{field} must be at most {MAX_STAKE}")
    return amount


def parse_odds(value):
    odds = parse_amount(value, "odds")
    if odds <= 1:
        raise BettingError("odds must be greater than 1")
    return odds


def combined_odds(odds_list):
    return round(reduce(lambda acc, o: acc * o, odds_list, 1.0), 4)


def price_bet(stake, bet_type, selections):
    """
    Price a bet from the stored odds of its selections.

    `selections` is a list of {"prediction_id", "odds", ...}. Returns a dict
    with the per-selection potential returns plus bet totals:
      - single: the stake is placed on every selection separately
      - multiple: one stake on the product of all odds (parlay)
    """
    stake = parse_stake(stake)
    if bet_type not in BET_TYPES:
        raise BettingError(f"betType must be one of {', '.join(BET_TYPES)}")
    if not selections:
        raise BettingError("At least one tip is required")
    if len(selections) > MAX_SELECTIONS:
        raise BettingError(f"A bet can include at most {MAX_SELECTIONS} tips")

    priced = []
    if bet_type == "single":
        for s in selections:
            item = dict(s)
            item["potential_return"] = round(stake * s["odds"], 2)
            priced.append(item)
        total_odds = selections[0]["odds"] if len(selections) == 1 else None
        total_stake = round(stake * len(selections), 2)
        potential = round(sum(p["potential_return"] for p in priced), 2)
    else:
        if len(selections) < 2:
            raise BettingError("A multiple bet needs at least two tips")
        priced = [dict(s) for s in selections]
        total_odds = combined_odds([s["odds"] for s in selections])
        if total_odds > MAX_COMBINED_ODDS:
            raise BettingError(f"Combined odds cannot exceed {MAX_COMBINED_ODDS}")
        total_stake = stake
        potential = round(stake * total_odds, 2)

    return {
        "stake": stake,
        "bet_type": bet_type,
        "selections": priced,
        "total_odds": total_odds,
        "total_stake": total_stake,
        "potential_return": potential,
    }


def settlement_return(bet, status, actual_return=None):
    """Validate the payout recorded when a bet reaches a terminal status."""
    if status not in TERMINAL_RESULTS:
        raise BettingError(f"status must be one of {', '.join(TERMINAL_RESULTS)}")

    potential = float(bet.get("potential_return") or 0)
    total_stake = float(bet.get("total_stake") or bet.get("stake") or 0)

    if status == "lost":
        if actual_return not in (None, "") and parse_amount(actual_return, "actualReturn") != 0:
            raise BettingError("A lost bet cannot have a return")
        return 0.0

    if status == "void":
        return round(total_stake, 2)

    if actual_return in (None, ""):
        return round(potential, 2)
    amount = parse_amount(actual_return, "actualReturn")
    if amount <= 0 or amount > potential + 0.005:
        raise BettingError(f"actualReturn must be between 0 and {potential:.2f} for a won bet")
    return round(amount, 2)


def _pct(num, den):
    return round(num / den * 100, 2) if den else 0.0


def betting_stats(bets):
    won = [b for b in bets if b.get("status") == "won"]
    lost = [b for b in bets if b.get("status") == "lost"]
    void = [b for b in bets if b.get("status") == "void"]
    pending = [b for b in bets if b.get("status") == "pending"]
    settled = won + lost + void

    def staked(rows):
        return sum(float(b.get("total_stake") or b.get("stake") or 0) for b in rows)

    total_staked = staked(bets)
    settled_staked = staked(settled)
    total_returns = sum(float(b.get("actual_return") or 0) for b in settled)
    profit = total_returns - settled_staked

    return {
        "totalBets": len(bets),
        "wonBets": len(won),
        "lostBets": len(lost),
        "voidBets": len(void),
        "pendingBets": len(pending),
        "totalStaked": round(total_staked, 2),
        "settledStaked": round(settled_staked, 2),
        "totalReturns": round(total_returns, 2),
        "profit": round(profit, 2),
        "roi": _pct(profit, settled_staked),
        "winRate": _pct(len(won), len(won) + len(lost)),
    }


def follow_profit(odds, stake, status):
    """Profit of a followed tip at a notional stake; None while pending."""
    if status == "won":
        return round(stake * odds - stake, 2)
    if status == "lost":
        return round(-stake, 2)
    if status == "void":
        return 0.0
    return None


def wallet_summary(entries):
    settled = [e for e in entries if e.get("profit") is not None]
    settled_staked = sum(e["stake"] for e in settled)
    total_profit = round(sum(e["profit"] for e in settled), 2)
    return {
        "total": len(entries),
        "won": sum(1 for e in entries if e.get("status") == "won"),
        "lost": sum(1 for e in entries if e.get("status") == "lost"),
        "pending": sum(1 for e in entries if e.get("status") == "pending"),
        "totalStaked": round(sum(e["stake"] for e in entries), 2),
        "totalProfit": total_profit,
        "roi": _pct(total_profit, settled_staked),
    }
