"""
ffmpeg filter expressions for audio shielding.

Two renditions of the same idea:

- `channel_graph`: a `-filter_complex` graph. The right channel is scaled by
  `(1 - p) - p` (p=1 inverts it fully, p=0 leaves it alone) and a faint stereo
  source of three high sines (16 kHz, 17.5 kHz, 19 kHz weighted 1.0/0.7/0.5)
  is mixed under the program audio at weight 0.05.
- `per_channel_chain`: a plain `-af` chain for when the graph is rejected.
  Phase is a binary flip via `stereotools` (on when p >= 0.5) and the noise is
  approximated by a high-shelf boost above 12 kHz of up to +3 dB.

Both produce a stream labelled/consumed as stereo PCM by the shield stage.
"""

from __future__ import annotations

from audio_shield.jobs.models import ShieldOptions

OUT_LABEL = "out"

NOISE_TONES: tuple[tuple[float, float], ...] = (
    (16000.0, 1.0),
    (17500.0, 0.7),
    (19000.0, 0.5),
)
NOISE_MIX_WEIGHTS = (1.0, 0.05)
# aevalsrc needs a finite length; amix duration=first trims it to the program audio
NOISE_SOURCE_SECONDS = 99999
SHELF_FREQ_HZ = 12000
SHELF_MAX_GAIN_DB = 3.0


def _num(x: float) -> str:
    s = f"{float(x):.10g}"
    return "0" if s == "-0" else s


def right_channel_gain(phase_factor: float) -> float:
    p = float(phase_factor)
    return (1.0 - p) - p


def noise_expression(level: float) -> str:
    terms = []
    for freq, weight in NOISE_TONES:
        sine = f"sin(2*PI*{_num(freq)}*t)"
        terms.append(sine if weight == 1.0 else f"{_num(weight)}*{sine}")
    return f"{_num(level)}*({'+'.join(terms)})"


def noise_source(level: float, *, sample_rate: int = 44100, label: str = "noise") -> str:
    return (
        f"aevalsrc='{noise_expression(level)}'"
        f":s={int(sample_rate)}:c=stereo:d={NOISE_SOURCE_SECONDS}[{label}]"
    )


def _mix(a: str, b: str) -> str:
    w0, w1 = NOISE_MIX_WEIGHTS
    return (
        f"[{a}][{b}]amix=inputs=2:duration=first:weights='{_num(w0)} {_num(w1)}'"
        f"[{OUT_LABEL}]"
    )


def channel_graph(options: ShieldOptions, *, sample_rate: int = 44100) -> str:
    p = options.phase_factor
    n = options.noise_level
    nodes: list[str] = []

    if p > 0:
        nodes.append("[0:a]channelsplit=channel_layout=stereo[L][R]")
        nodes.append(f"[R]aeval='val(0)*{_num(right_channel_gain(p))}':c=mono[R_inv]")
        nodes.append("[L][R_inv]join=inputs=2:channel_layout=stereo[stereo]")
        if n > 0:
            nodes.append(noise_source(n, sample_rate=sample_rate))
            nodes.append(_mix("stereo", "noise"))
        else:
            nodes.append(f"[stereo]acopy[{OUT_LABEL}]")
    elif n > 0:
        nodes.append(noise_source(n, sample_rate=sample_rate))
        nodes.append(_mix("0:a", "noise"))
    else:
        nodes.append(f"[0:a]acopy[{OUT_LABEL}]")

    return ";".join(nodes)


def shelf_gain_db(options: ShieldOptions) -> float:
    return (options.ultrasonic_noise / 100.0) * SHELF_MAX_GAIN_DB


def per_channel_chain(options: ShieldOptions) -> str:
    p = options.phase_factor
    chain: list[str] = []
    if p > 0:
        chain.append(f"stereotools=phasel=0:phaser={1 if p >= 0.5 else 0}")
    if options.ultrasonic_noise > 0:
        chain.append(f"highshelf=f={SHELF_FREQ_HZ}:g={_num(shelf_gain_db(options))}")
    if not chain:
        chain.append("acopy")
    return ",".join(chain)
