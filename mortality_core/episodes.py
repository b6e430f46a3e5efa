"""
Survival Episode Builder
========================
Expands each subject's single [entry, exit) follow-up interval, on the
attained-age time scale (origin = birth), into sub-intervals split at every
age-band and calendar-period boundary that falls strictly inside it (Lexis
splitting). Each episode carries its duration, the reference rate of its
(sex, age band, period band) cell and the event indicator for one target
cause.

Calendar time along a subject's life line is birth decimal year + age, so a
period cut point c falls at age c - birth_year.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import Config
from .exceptions import DataIntegrityError
from .records import Subject, SurvivalEpisode
from .reference_rates import ReferenceRateTable

logger = logging.getLogger(__name__)

# Sub-intervals shorter than this (in years) are degenerate
ZERO_LENGTH_TOL = 1e-10

EPISODE_COLUMNS = [
    'subject_id', 'sex', 'age_start', 'age_end', 'year_start', 'year_end',
    'age_band', 'period_band', 'event', 'rate', 'duration', 'expected',
]


@dataclass(frozen=True)
class EpisodeSet:
    """Episodes for one target cause plus the subjects that could not be split."""

    cause: str
    episodes: pd.DataFrame
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def n_subjects(self) -> int:
        return int(self.episodes['subject_id'].nunique())


# =============================================================================
# SUBJECT PREPARATION
# =============================================================================

def subjects_from_frame(
    frame: pd.DataFrame,
    causes: Sequence[str] = None,
    all_cause_col: str = Config.ALL_CAUSES,
    id_col: str = Config.ID_COL,
    sex_col: str = Config.SEX_COL,
    birth_col: str = Config.BIRTH_COL,
    entry_col: str = Config.ENTRY_COL,
    exit_col: str = Config.EXIT_COL,
    diagnosis_col: str = Config.DIAGNOSIS_COL,
    attribute_cols: Sequence[str] = (),
    drop_invalid: bool = False,
) -> Tuple[List[Subject], List[Dict[str, Any]]]:
    """
    Convert a one-row-per-subject table into validated Subject records.

    Cause flag columns are 0/1 and mutually exclusive; `all_cause_col` is the
    catch-all death flag. Deaths from causes outside `causes` keep
    cause_of_death=None but died=True.

    Returns:
    --------
    subjects : list of Subject
    invalid : list of {'subject_id', 'reason'} for rejected rows

    Raises DataIntegrityError listing every invalid row unless drop_invalid.
    """
    causes = list(Config.CAUSES if causes is None else causes)
    required = [id_col, sex_col, birth_col, entry_col, exit_col]
    missing = [c for c in required if c not in frame.columns]
    if missing:
        raise KeyError(f"Missing subject columns: {missing}. Available: {list(frame.columns)}")

    df = frame.copy()
    for col in [birth_col, entry_col, exit_col]:
        df[col] = pd.to_datetime(df[col], errors='coerce')
    flag_cols = [c for c in causes + [all_cause_col] if c in df.columns]
    if flag_cols:
        df[flag_cols] = df[flag_cols].fillna(0).astype(int)

    subjects = []
    invalid = []
    for row in df.to_dict('records'):
        flagged = [c for c in causes if row.get(c, 0) == 1]
        if all_cause_col in row:
            died = row[all_cause_col] == 1
        else:
            died = bool(flagged)

        try:
            if len(flagged) > 1:
                raise DataIntegrityError(
                    f"Subject {row[id_col]}: more than one cause flagged {flagged}", [row[id_col]])
            subject = Subject(
                subject_id=row[id_col],
                sex=row[sex_col],
                birth_date=row[birth_col],
                entry_date=row[entry_col],
                exit_date=row[exit_col],
                diagnosis=row.get(diagnosis_col),
                died=died,
                cause_of_death=flagged[0] if flagged else None,
                attributes={c: row[c] for c in attribute_cols},
            )
            subject.validate()
        except DataIntegrityError as e:
            invalid.append({'subject_id': row[id_col], 'reason': str(e)})
            continue
        subjects.append(subject)

    _report_invalid(invalid, drop_invalid)
    return subjects, invalid


def _report_invalid(invalid: List[Dict[str, Any]], drop_invalid: bool) -> None:
    if not invalid:
        return
    ids = [item['subject_id'] for item in invalid]
    preview = '; '.join(item['reason'] for item in invalid[:5])
    if not drop_invalid:
        raise DataIntegrityError(
            f"{len(invalid)} invalid subject record(s): {preview}", ids)
    logger.warning(f"Dropped {len(invalid)} invalid subject record(s): {preview}")


# =============================================================================
# LEXIS SPLITTING
# =============================================================================

def band_label(cuts: Sequence[float], index: int) -> str:
    """Label of band `index` of the partition defined by `cuts` (e.g. '5-9', '85+')."""
    if index < 0:
        return f"<{cuts[0]:g}"
    if index >= len(cuts) - 1:
        return f"{cuts[-1]:g}+"
    lo, hi = cuts[index], cuts[index + 1]
    if float(lo).is_integer() and float(hi).is_integer():
        return f"{lo:g}-{hi - 1:g}"
    return f"{lo:g}-{hi:g}"


def split_subject(
    subject: Subject,
    cause: str,
    rate_table: ReferenceRateTable,
    age_cuts: Sequence[float] = None,
    period_cuts: Sequence[float] = None,
    rate_cause: str = None,
    split_on_reference_bands: bool = Config.SPLIT_ON_REFERENCE_BANDS,
) -> List[SurvivalEpisode]:
    """
    Split one subject's follow-up into age x period episodes.

    Parameters:
    -----------
    subject : validated Subject
    cause : target cause for the event indicator
    rate_table : reference rates
    age_cuts : age band boundaries (years); also used for age_band labels
    period_cuts : calendar boundaries; also used for period_band labels
    rate_cause : cause key in the reference table (defaults to `cause`)
    split_on_reference_bands : also split at the reference table's band edges

    Returns:
    --------
    List of SurvivalEpisode ordered by age; event=1 only on the last one.
    """
    age_cuts = np.asarray(Config.AGE_CUTS if age_cuts is None else age_cuts, dtype=float)
    period_cuts = np.asarray(Config.PERIOD_CUTS if period_cuts is None else period_cuts, dtype=float)
    rate_cause = cause if rate_cause is None else rate_cause

    split_ages = age_cuts
    split_years = period_cuts
    if split_on_reference_bands:
        split_ages = np.union1d(age_cuts, rate_table.age_edges())
        split_years = np.union1d(period_cuts, rate_table.year_edges())

    entry = subject.entry_age
    exit_ = subject.exit_age
    birth = subject.birth_year

    period_ages = split_years - birth
    inner = np.concatenate([
        split_ages[(split_ages > entry) & (split_ages < exit_)],
        period_ages[(period_ages > entry) & (period_ages < exit_)],
    ])
    bounds = np.unique(np.concatenate([[entry], inner, [exit_]]))
    starts, ends = bounds[:-1], bounds[1:]
    keep = (ends - starts) > ZERO_LENGTH_TOL
    starts, ends = starts[keep], ends[keep]
    if len(starts) == 0:
        return []

    # Midpoints sit strictly inside one reference cell
    mid = (starts + ends) / 2
    rates = rate_table.rates(subject.sex, mid, birth + mid, rate_cause)
    age_idx = np.searchsorted(age_cuts, mid, side='right') - 1
    period_idx = np.searchsorted(period_cuts, birth + mid, side='right') - 1

    has_event = subject.has_event(cause)
    last = len(starts) - 1
    attributes = {k: v for k, v in subject.grouping_values().items() if k != 'sex'}

    return [
        SurvivalEpisode(
            subject_id=subject.subject_id,
            sex=subject.sex,
            age_start=float(starts[i]),
            age_end=float(ends[i]),
            year_start=float(birth + starts[i]),
            year_end=float(birth + ends[i]),
            age_band=band_label(age_cuts, int(age_idx[i])),
            period_band=band_label(period_cuts, int(period_idx[i])),
            event=int(has_event and i == last),
            rate=float(rates[i]),
            attributes=attributes,
        )
        for i in range(len(starts))
    ]


def episodes_to_frame(episodes: Iterable[SurvivalEpisode],
                      attribute_names: Sequence[str] = ()) -> pd.DataFrame:
    """
    One row per episode. attribute_names fixes the grouping columns of an
    empty table so it can still be aggregated by them.
    """
    rows = [ep.to_row() for ep in episodes]
    if not rows:
        return pd.DataFrame(columns=EPISODE_COLUMNS + [c for c in attribute_names
                                                       if c not in EPISODE_COLUMNS])
    frame = pd.DataFrame(rows)
    extra = [c for c in frame.columns if c not in EPISODE_COLUMNS]
    return frame[EPISODE_COLUMNS + extra]


def build_episodes(
    subjects: Iterable[Subject],
    cause: str,
    rate_table: ReferenceRateTable,
    age_cuts: Sequence[float] = None,
    period_cuts: Sequence[float] = None,
    rate_cause: str = None,
    split_on_reference_bands: bool = Config.SPLIT_ON_REFERENCE_BANDS,
    drop_invalid: bool = False,
) -> EpisodeSet:
    """
    Build the survival-episode table of all subjects for one cause.

    Invalid subjects are collected; without drop_invalid the whole set is
    reported in one DataIntegrityError. Reference lookup failures propagate.
    """
    episodes = []
    failures = []
    attribute_names: List[str] = []
    for subject in subjects:
        for name in subject.grouping_values():
            if name != 'sex' and name not in attribute_names:
                attribute_names.append(name)
        try:
            subject.validate()
        except DataIntegrityError as e:
            failures.append({'subject_id': subject.subject_id, 'reason': str(e)})
            continue
        pieces = split_subject(subject, cause, rate_table, age_cuts, period_cuts,
                               rate_cause, split_on_reference_bands)
        if not pieces:
            logger.debug(f"Subject {subject.subject_id}: zero follow-up, no episodes")
        episodes.extend(pieces)

    _report_invalid(failures, drop_invalid)

    frame = episodes_to_frame(episodes, attribute_names)
    if len(frame) > 0:
        n_clamped = int(((frame['year_start'] < rate_table.min_year) |
                         (frame['year_end'] > rate_table.max_year)).sum())
        if n_clamped:
            logger.info(f"[{cause}] {n_clamped} episode(s) outside reference years "
                        f"{rate_table.min_year:g}-{rate_table.max_year:g}; periods clamped")
        logger.info(f"[{cause}] {frame['subject_id'].nunique():,} subjects -> "
                    f"{len(frame):,} episodes, {int(frame['event'].sum())} events")

    return EpisodeSet(cause=cause, episodes=frame, failures=failures)


# =============================================================================
# EPISODE SUMMARIES
# =============================================================================

def collapse_episodes(episodes: pd.DataFrame) -> pd.DataFrame:
    """Per-subject totals: entry/exit age, follow-up, events, expected deaths."""
    grouped = episodes.groupby('subject_id', sort=False)
    return pd.DataFrame({
        'entry_age': grouped['age_start'].min(),
        'exit_age': grouped['age_end'].max(),
        'follow_up': grouped['duration'].sum(),
        'event': grouped['event'].sum(),
        'expected': grouped['expected'].sum(),
        'n_episodes': grouped.size(),
    }).reset_index()


def hazard_by_age(episodes: pd.DataFrame, edges: Sequence[float]) -> pd.DataFrame:
    """
    Observed and expected hazard per attained-age band [edges[i], edges[i+1]).

    Person-years and expected deaths are apportioned by overlap, so the bands
    need not coincide with the splitting cut points. Events are counted in
    the band containing the episode's end age.
    """
    edges = np.asarray(edges, dtype=float)
    start = episodes['age_start'].to_numpy(dtype=float)
    end = episodes['age_end'].to_numpy(dtype=float)
    rate = episodes['rate'].to_numpy(dtype=float)
    event = episodes['event'].to_numpy(dtype=float)

    rows = []
    for lo, hi in zip(edges[:-1], edges[1:]):
        overlap = np.clip(np.minimum(end, hi) - np.maximum(start, lo), 0, None)
        y = float(overlap.sum())
        e = float((rate * overlap).sum())
        d = float(event[(end > lo) & (end <= hi)].sum())
        rows.append({
            'age_lo': lo,
            'age_hi': hi,
            'y': y,
            'd': d,
            'e': e,
            'observed_hazard': d / y if y > 0 else np.nan,
            'expected_hazard': e / y if y > 0 else np.nan,
        })
    return pd.DataFrame(rows)
