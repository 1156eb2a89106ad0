#!/usr/bin/env python3
"""
Hail Confidence Scoring Engine
Multi-factor damage-probability score: MESH size + report density + recency (+ optional social signal)
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .config import ConfidenceConfig
from .report_ingest import HailReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfidenceFactors:
    """Per-factor breakdown of a confidence score"""
    mesh_score: float       # 10-70 based on hail size
    social_score: float     # 0-20 based on social media corroboration
    recency_score: float    # 0-10 based on report age
    density_score: float    # 0-10 based on nearby corroborating reports
    total_score: float      # clamped combination


@dataclass(frozen=True)
class SocialSignal:
    """Aggregated social media activity for one platform and time"""
    platform: str
    mentions: int
    verified_accounts: int
    damage_reports: int
    timestamp: datetime


@dataclass(frozen=True)
class ConfidenceLevel:
    """Human readable confidence band"""
    level: str
    color: str
    recommendation: str


# (min_score, level, color, recommendation)
CONFIDENCE_LEVELS = [
    (85, 'Very High', '#dc2626', 'Immediate canvassing recommended - high damage probability'),
    (70, 'High', '#f97316', 'Priority area - likely significant damage'),
    (55, 'Moderate', '#f59e0b', 'Good potential - worth canvassing'),
    (40, 'Low', '#84cc16', 'Possible damage - check if time permits'),
    (0, 'Very Low', '#22c55e', 'Unlikely damage - focus on higher confidence areas'),
]


def _ensure_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ConfidenceScorer:
    """
    Confidence scoring for hail reports
    Stateless apart from its config, so one scorer can serve concurrent callers
    """

    def __init__(self, config: ConfidenceConfig = None):
        self.config = config or ConfidenceConfig()

    @staticmethod
    def mesh_score(size_inches: float) -> float:
        """
        Size-based score (NOAA MESH vs damage correlation)
        <0.75" = 10, 0.75" = 20, 1" = 35, 1.5" = 55, 2" = 65, 2.5"+ = 70
        """
        if not math.isfinite(size_inches):
            return 10.0
        if size_inches >= 2.5:
            return 70.0
        if size_inches >= 2.0:
            return 65.0
        if size_inches >= 1.5:
            return 55.0
        if size_inches >= 1.0:
            return 35.0
        if size_inches >= 0.75:
            return 20.0
        return 10.0

    def recency_score(self, timestamp: datetime, now: Optional[datetime] = None) -> float:
        """Step decay by storm age in days, never below recency_floor"""
        now = _ensure_utc(now or datetime.now(timezone.utc))
        age_days = max((now - _ensure_utc(timestamp)).total_seconds() / 86400.0, 0.0)

        if age_days <= 1:
            score = 10.0
        elif age_days <= 3:
            score = 8.0
        elif age_days <= 7:
            score = 6.0
        elif age_days <= 14:
            score = 4.0
        elif age_days <= 30:
            score = 2.0
        else:
            score = 0.0
        return max(score, self.config.recency_floor)

    def count_corroborating(self, report: HailReport, neighbors: Sequence[HailReport]) -> int:
        """Neighbors inside the density radius (and time window when configured)"""
        radius = self.config.density_radius_deg
        window_seconds = None
        if self.config.density_window_minutes is not None:
            window_seconds = self.config.density_window_minutes * 60.0

        count = 0
        for nearby in neighbors:
            if nearby is report or nearby.id == report.id:
                continue
            distance = math.hypot(nearby.latitude - report.latitude,
                                  nearby.longitude - report.longitude)
            if distance > radius:
                continue
            if window_seconds is not None:
                delta = abs((_ensure_utc(nearby.timestamp) - _ensure_utc(report.timestamp)).total_seconds())
                if delta > window_seconds:
                    continue
            count += 1
        return count

    def density_score(self, report: HailReport, neighbors: Sequence[HailReport]) -> float:
        """More corroborating reports raise confidence, none is never a penalty"""
        if not neighbors:
            return 0.0
        count = self.count_corroborating(report, neighbors)
        if count >= 10:
            return 10.0
        if count >= 7:
            return 8.0
        if count >= 5:
            return 6.0
        if count >= 3:
            return 4.0
        if count >= 1:
            return 2.0
        return 0.0

    def social_score(self, report: HailReport, signals: Sequence[SocialSignal]) -> float:
        """Mentions (0-10) + verified accounts (0-5) + damage reports (0-5), capped at 20"""
        if not signals:
            return 0.0

        window = self.config.social_window_hours * 3600.0
        relevant = [
            s for s in signals
            if abs((_ensure_utc(s.timestamp) - _ensure_utc(report.timestamp)).total_seconds()) < window
        ]

        mentions = sum(s.mentions for s in relevant)
        verified = sum(s.verified_accounts for s in relevant)
        damage = sum(s.damage_reports for s in relevant)

        score = 0.0
        if mentions >= 100:
            score += 10
        elif mentions >= 50:
            score += 7
        elif mentions >= 20:
            score += 5
        elif mentions >= 10:
            score += 3
        elif mentions > 0:
            score += 1

        if verified >= 5:
            score += 5
        elif verified >= 3:
            score += 4
        elif verified >= 1:
            score += 2

        if damage >= 10:
            score += 5
        elif damage >= 5:
            score += 4
        elif damage >= 2:
            score += 3
        elif damage >= 1:
            score += 2

        return min(score, 20.0)

    def score(self, report: HailReport, neighbors: Sequence[HailReport] = (),
              social: Optional[Sequence[SocialSignal]] = None,
              now: Optional[datetime] = None) -> ConfidenceFactors:
        """
        Calculate the confidence breakdown for one report
        - total = weighted mesh + social + recency + density
        - TOTAL CLAMPED TO [min_total_score, max_total_score]
        """
        cfg = self.config
        mesh_pts = self.mesh_score(report.size)
        social_pts = self.social_score(report, social or [])
        recency_pts = self.recency_score(report.timestamp, now)
        density_pts = self.density_score(report, neighbors or [])

        weighted = (mesh_pts * cfg.mesh_weight + social_pts * cfg.social_weight +
                    recency_pts * cfg.recency_weight + density_pts * cfg.density_weight)
        if not math.isfinite(weighted):
            weighted = cfg.min_total_score
        total = max(cfg.min_total_score, min(weighted, cfg.max_total_score))
        total = max(0.0, min(total, 100.0))

        logger.debug(f"Confidence {report.id}: mesh={mesh_pts}, social={social_pts}, "
                     f"recency={recency_pts}, density={density_pts} = {total} (clamped)")

        return ConfidenceFactors(
            mesh_score=mesh_pts,
            social_score=social_pts,
            recency_score=recency_pts,
            density_score=density_pts,
            total_score=total,
        )

    def score_reports(self, reports: Sequence[HailReport],
                      now: Optional[datetime] = None) -> List[HailReport]:
        """Score every report against the rest of the batch, returning new reports"""
        scored = []
        for report in reports:
            factors = self.score(report, reports, now=now)
            scored.append(replace(report, confidence=factors.total_score, confidence_factors=factors))

        if scored:
            mean_score = sum(r.confidence for r in scored) / len(scored)
            logger.info(f"Scored {len(scored)} reports, mean confidence {mean_score:.1f}")
        return scored


def confidence_level(score: float) -> ConfidenceLevel:
    """Map a 0-100 score to its confidence band"""
    if not math.isfinite(score):
        score = 0.0
    for min_score, level, color, recommendation in CONFIDENCE_LEVELS:
        if score >= min_score:
            return ConfidenceLevel(level, color, recommendation)
    _, level, color, recommendation = CONFIDENCE_LEVELS[-1]
    return ConfidenceLevel(level, color, recommendation)


def damage_statement(factors: ConfidenceFactors, hail_size: float) -> str:
    """Homeowner-facing damage probability statement"""
    level = confidence_level(factors.total_score)

    statement = f'Based on {hail_size:.1f}" hail detected in your area, '
    statement += f"there is a {level.level.lower()} probability ({factors.total_score:.0f}%) "
    statement += "of roof damage to your property. "

    if factors.social_score > 10:
        statement += "Multiple residents in your neighborhood have reported damage. "
    if factors.recency_score >= 8:
        statement += "This is a recent storm event with fresh damage. "
    if factors.density_score >= 6:
        statement += "High concentration of hail reports confirm significant impact in your area. "

    return statement.strip()
