# alert_state.py
"""
Low‑fuel alert decision with hysteresis.

The rule lives in the pure function :func:`evaluate`; the
:class:`LowFuelAlertMachine` only keeps the episode between calls. Nothing
here knows about BLE or about how a notification is presented.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from app_logger import logger


@dataclass(frozen=True)
class AlertEpisode:
    has_alert_been_sent: bool = False
    last_alert_threshold: Optional[float] = None


@dataclass(frozen=True)
class AlertDecision:
    fire: bool
    message: str = ""
    percentage: Optional[float] = None
    threshold: Optional[float] = None


def evaluate(
    percentage: Optional[float],
    threshold: Optional[float],
    enabled: bool,
    episode: AlertEpisode,
) -> Tuple[bool, AlertEpisode]:
    """
    Decide whether a low‑fuel alert fires for this reading.

    Returns ``(fire, next_episode)``. Below or at the threshold an alert fires
    once per breach episode, and again whenever the threshold itself differs
    from the one the last alert was sent for. Going back above the threshold
    re‑arms the alert.
    """
    if not enabled or percentage is None or threshold is None:
        return False, episode

    if percentage <= threshold:
        if not episode.has_alert_been_sent or episode.last_alert_threshold != threshold:
            return True, AlertEpisode(True, threshold)
        return False, episode

    return False, AlertEpisode(False, episode.last_alert_threshold)


class LowFuelAlertMachine:
    """
    Holds the alert episode for one session.

    The episode survives disconnects and reconnects on purpose: only a fuel
    reading above the threshold clears it.
    """

    def __init__(self, episode: Optional[AlertEpisode] = None):
        self.episode = episode or AlertEpisode()

    def update(
        self, percentage: Optional[float], threshold: Optional[float], enabled: bool
    ) -> AlertDecision:
        fire, self.episode = evaluate(percentage, threshold, enabled, self.episode)
        if not fire:
            return AlertDecision(False, percentage=percentage, threshold=threshold)

        message = (
            f"Gas level at {int(percentage)}% (below the {int(threshold)}% threshold)"
        )
        logger.warning("low fuel alert: %s", message)
        return AlertDecision(True, message, percentage, threshold)
