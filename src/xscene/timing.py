"""Resolves the time unit of animation clips.

DirectX files store keyframe times in ticks, but the number of ticks per second is frequently
missing or wrong. :py:class:`TimingCorrector` picks the rate which gives a plausible animation
length, then rescales the keyframes so their tick values match that rate.
"""
from __future__ import annotations
from typing import Iterable, List, Optional, Sequence, Tuple
from typing_extensions import Final
import statistics

import attrs

from xscene.errors import ErrorKind
from xscene.logger import get_logger
from xscene.model import DEFAULT_TICKS_PER_SECOND, AnimationClip, Keyframe, SceneDocument


__all__ = [
    'COMMON_TICK_RATES', 'MIN_DURATION', 'MAX_DURATION', 'TIMING_TOLERANCE',
    'TimingAnalysis', 'TimingCorrectionResult', 'TimingReport', 'TimingCorrector',
    'ticks_to_seconds', 'seconds_to_ticks', 'convert_keyframe_times',
    'is_valid_tick_rate', 'is_valid_duration',
]
LOGGER = get_logger(__name__)

#: Rates seen in the wild. 4800 is the DirectX default, 160 is common from 3ds Max exporters.
COMMON_TICK_RATES: Final[Tuple[float, ...]] = (
    160.0, 1000.0, 2400.0, 4800.0, 9600.0,
    24.0, 25.0, 29.97, 30.0, 60.0,
)
#: Shortest and longest durations (in seconds) accepted as real animations.
MIN_DURATION: Final = 0.05
MAX_DURATION: Final = 600.0
#: Maximum change in seconds a correction may make.
TIMING_TOLERANCE: Final = 0.1
#: Confidence given when the declared rate is already plausible.
EXPLICIT_CONFIDENCE: Final = 0.9
#: Bonus score for the most common rates.
RATE_BONUS: Final = {4800.0: 0.3, 160.0: 0.2, 1000.0: 0.1}
# Keyframe intervals are matched against these frame rates.
_FRAME_RATES: Final = (24.0, 25.0, 30.0, 60.0)
_INTERVAL_TOLERANCE: Final = 0.1
# Rates within this of each other are treated as the same.
_RATE_EPSILON: Final = 0.1
_SCALE_EPSILON: Final = 0.01
MAX_TICK_RATE: Final = 1_000_000.0
MAX_VALID_DURATION: Final = 3600.0


def ticks_to_seconds(ticks: float, ticks_per_second: float) -> float:
    """Convert a time in ticks to seconds."""
    if ticks_per_second <= 0:
        raise ValueError(f'Invalid tick rate {ticks_per_second}')
    return ticks / ticks_per_second


def seconds_to_ticks(seconds: float, ticks_per_second: float) -> float:
    """Convert a time in seconds to ticks."""
    if ticks_per_second <= 0:
        raise ValueError(f'Invalid tick rate {ticks_per_second}')
    return seconds * ticks_per_second


def is_valid_tick_rate(rate: float) -> bool:
    """Check a rate is positive and not absurdly large."""
    return 0.0 < rate <= MAX_TICK_RATE


def is_valid_duration(seconds: float) -> bool:
    """Check a duration is positive and no longer than an hour."""
    return 0.0 < seconds <= MAX_VALID_DURATION


def convert_keyframe_times(keyframes: Iterable[Keyframe], from_rate: float, to_rate: float) -> List[Keyframe]:
    """Return copies of the keyframes, with times expressed in a different rate.

    The times are unchanged if the rates are the same.
    """
    keyframes = list(keyframes)
    if from_rate <= 0 or to_rate <= 0 or abs(from_rate - to_rate) <= _RATE_EPSILON:
        return [attrs.evolve(key) for key in keyframes]
    scale = to_rate / from_rate
    return [attrs.evolve(key, time=key.time * scale) for key in keyframes]


@attrs.define
class TimingAnalysis:
    """The rate detected for a clip, and how it was determined."""
    detected_ticks_per_second: float = DEFAULT_TICKS_PER_SECOND
    confidence: float = 0.0
    method: str = ''
    candidates: List[float] = attrs.Factory(list)


@attrs.define
class TimingCorrectionResult:
    """The outcome of correcting a single clip."""
    clip_name: str = ''
    is_valid: bool = False
    original_duration_seconds: float = 0.0
    corrected_duration_seconds: float = 0.0
    timing_error_seconds: float = 0.0
    original_ticks_per_second: float = DEFAULT_TICKS_PER_SECOND
    detected_ticks_per_second: float = DEFAULT_TICKS_PER_SECOND
    #: The multiplier applied to keyframe times.
    time_scale: float = 1.0
    error_description: str = ''
    errors: List[ErrorKind] = attrs.Factory(list)


@attrs.define
class TimingReport:
    """The results of correcting a batch of clips."""
    results: List[TimingCorrectionResult] = attrs.Factory(list)

    @property
    def success_count(self) -> int:
        return sum(1 for res in self.results if res.is_valid)

    @property
    def failure_count(self) -> int:
        return sum(1 for res in self.results if not res.is_valid)

    @property
    def mean_error(self) -> float:
        """The average timing error, in seconds."""
        if not self.results:
            return 0.0
        return statistics.fmean(res.timing_error_seconds for res in self.results)

    def summary(self) -> str:
        """Produce a human-readable report."""
        lines = [
            f'Timing correction: {len(self.results)} animations, '
            f'{self.success_count} succeeded, {self.failure_count} failed, '
            f'mean error {self.mean_error:.4f}s',
        ]
        for res in self.results:
            status = 'OK' if res.is_valid else 'FAILED'
            line = (
                f'{res.clip_name}: {status}, {res.original_duration_seconds:.3f}s -> '
                f'{res.corrected_duration_seconds:.3f}s @ {res.detected_ticks_per_second:g} tps'
            )
            if res.error_description:
                line += f' ({res.error_description})'
            lines.append(line)
        return '\n'.join(lines)


class TimingCorrector:
    """Detects and corrects the tick rate of animation clips."""
    min_duration: float
    max_duration: float
    tolerance: float
    rates: Tuple[float, ...]

    def __init__(
        self,
        *,
        min_duration: float = MIN_DURATION,
        max_duration: float = MAX_DURATION,
        tolerance: float = TIMING_TOLERANCE,
        rates: Sequence[float] = COMMON_TICK_RATES,
    ) -> None:
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.tolerance = tolerance
        self.rates = tuple(rates)

    def is_reasonable_duration(self, seconds: float) -> bool:
        """Check if this could be the length of a real animation."""
        return self.min_duration <= seconds <= self.max_duration

    def _duration_at(self, clip: AnimationClip, rate: float) -> float:
        return clip.duration / rate if rate > 0 else 0.0

    def analyze(self, clip: AnimationClip) -> TimingAnalysis:
        """Determine the most likely tick rate for the clip."""
        declared = clip.ticks_per_second
        if declared > 0 and self.is_reasonable_duration(self._duration_at(clip, declared)):
            return TimingAnalysis(declared, EXPLICIT_CONFIDENCE, 'Explicit from animation header', [declared])
        if not clip.keyframes and not clip.bone_keyframes:
            return TimingAnalysis(DEFAULT_TICKS_PER_SECOND, 0.0, 'Default, no keyframes')

        candidates = self.candidate_rates(clip)
        best_rate = DEFAULT_TICKS_PER_SECOND
        best_score = 0.0
        for rate in candidates:
            score = self.score_rate(rate, clip)
            # Ties go to the earlier candidate.
            if score > best_score:
                best_rate = rate
                best_score = score
        LOGGER.debug(
            'Clip "{}": declared {} tps implausible, best candidate {} (score {:.2f})',
            clip.name, declared, best_rate, best_score,
        )
        return TimingAnalysis(best_rate, best_score, 'Candidate scoring', candidates)

    def candidate_rates(self, clip: AnimationClip) -> List[float]:
        """The rates to consider, most common first."""
        candidates = list(self.rates)
        from_keys = self.detect_from_keyframes(clip)
        if from_keys not in candidates:
            candidates.append(from_keys)

        def priority(rate: float) -> Tuple[int, float]:
            if rate == 4800.0:
                return (0, rate)
            elif rate == 160.0:
                return (1, rate)
            return (2, rate)
        candidates.sort(key=priority)
        return candidates

    def score_rate(self, rate: float, clip: AnimationClip) -> float:
        """Score how plausible a rate is for this clip, from 0 to 1."""
        seconds = self._duration_at(clip, rate)
        if seconds <= 0:
            return 0.0
        if 0.5 <= seconds <= 60.0:
            score = 1.0
        elif 0.1 <= seconds <= 300.0:
            score = 0.7
        elif self.is_reasonable_duration(seconds):
            score = 0.3
        else:
            return 0.0
        score += RATE_BONUS.get(rate, 0.0)
        return min(score, 1.0)

    def detect_from_keyframes(self, clip: AnimationClip) -> float:
        """Guess the rate from the spacing of keyframes.

        Keys are usually one frame apart, so the median interval is matched against the common
        frame rates for each base rate. Integer frame numbers imply a 30 FPS timeline.
        """
        times = sorted({key.time for key in clip.all_keyframes()})
        intervals = [b - a for a, b in zip(times, times[1:]) if b > a]
        if not intervals:
            return DEFAULT_TICKS_PER_SECOND
        median = statistics.median(intervals)
        for base in (4800.0, 160.0, 1000.0):
            for fps in _FRAME_RATES:
                expected = base / fps
                if abs(median - expected) <= expected * _INTERVAL_TOLERANCE:
                    return base
        if abs(median - 1.0) <= _INTERVAL_TOLERANCE:
            return 30.0
        return DEFAULT_TICKS_PER_SECOND

    def detect_from_duration(self, clip: AnimationClip) -> float:
        """Return the first common rate giving a plausible duration, or the default."""
        for rate in self.rates:
            if self.is_reasonable_duration(self._duration_at(clip, rate)):
                return rate
        return DEFAULT_TICKS_PER_SECOND

    def detect_from_header(self, document: SceneDocument) -> Optional[float]:
        """Return the rate declared by the file, if it had one."""
        if document.header.has_timing_info and document.header.ticks_per_second > 0:
            return document.header.ticks_per_second
        return None

    def correct(self, clip: AnimationClip) -> TimingCorrectionResult:
        """Detect the rate for the clip, and rescale it in place."""
        declared = clip.ticks_per_second
        if declared <= 0:
            LOGGER.warning('Clip "{}" has invalid rate {}, assuming {}', clip.name, declared, DEFAULT_TICKS_PER_SECOND)
            declared = DEFAULT_TICKS_PER_SECOND
        result = TimingCorrectionResult(
            clip_name=clip.name,
            original_ticks_per_second=declared,
            original_duration_seconds=clip.duration / declared,
        )
        analysis = self.analyze(clip)
        detected = analysis.detected_ticks_per_second
        result.detected_ticks_per_second = detected

        if abs(declared - detected) > _RATE_EPSILON:
            clip.ticks_per_second = detected
            time_scale = declared / detected
            if abs(time_scale - 1.0) > _SCALE_EPSILON:
                for key in clip.all_keyframes():
                    key.time *= time_scale
                clip.duration *= time_scale
                result.time_scale = time_scale
            LOGGER.info(
                'Clip "{}": {} -> {} ticks per second ({})',
                clip.name, declared, detected, analysis.method,
            )
        else:
            clip.ticks_per_second = declared

        result.corrected_duration_seconds = clip.duration / clip.ticks_per_second
        result.timing_error_seconds = abs(result.corrected_duration_seconds - result.original_duration_seconds)
        self._check(result)
        return result

    def validate(self, original_seconds: float, corrected_seconds: float) -> bool:
        """Check a corrected duration is plausible, and close to the original."""
        return (
            self.is_reasonable_duration(corrected_seconds)
            and abs(corrected_seconds - original_seconds) <= self.tolerance
        )

    def _check(self, result: TimingCorrectionResult) -> None:
        reasons = []
        if not self.is_reasonable_duration(result.corrected_duration_seconds):
            result.errors.append(ErrorKind.TIMING_OUT_OF_RANGE)
            reasons.append(f'Duration out of reasonable range ({result.corrected_duration_seconds:g}s)')
        if result.timing_error_seconds > self.tolerance:
            result.errors.append(ErrorKind.TIMING_LARGE_DELTA)
            reasons.append(f'Timing error too large: {result.timing_error_seconds:g}s')
        result.is_valid = not reasons
        if reasons:
            result.error_description = 'Timing correction failed validation. ' + '. '.join(reasons)

    def correct_all(self, clips: Iterable[AnimationClip]) -> TimingReport:
        """Correct each clip independently, in order."""
        report = TimingReport([self.correct(clip) for clip in clips])
        LOGGER.info(
            'Timing correction: {} succeeded, {} failed, mean error {:.4f}s',
            report.success_count, report.failure_count, report.mean_error,
        )
        return report
