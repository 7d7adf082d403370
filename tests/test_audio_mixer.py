"""Tests for the music sub-graph."""

import pytest

from adreel.exceptions import InvalidFieldValueError
from adreel.render.audio_mixer import (
    MusicTrack,
    build_mix_filter,
    build_music_filter,
    format_number,
)


class TestFormatNumber:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (4.0, "4"),
            (0.1 + 0.2, "0.3"),
            (1.2300000000000002, "1.23"),
            (0.0004, "0"),
            (-0.0, "0"),
            (12.5, "12.5"),
        ],
    )
    def test_millisecond_precision(self, value, expected):
        assert format_number(value) == expected


class TestMusicTrack:
    def test_defaults(self):
        track = MusicTrack(file="/music/a.mp3")
        assert track.volume == 1.0
        assert track.fade_in == 0
        assert track.fade_out == 0
        assert track.start_offset == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"volume": 1.5},
            {"volume": -0.2},
            {"fade_in": -1},
            {"fade_out": -1},
            {"start_offset": -3},
            {"start_offset": float("inf")},
            {"fade_out": float("inf")},
            {"fade_in": float("nan")},
            {"file": ""},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        params = {"file": "/music/a.mp3", **kwargs}
        with pytest.raises(InvalidFieldValueError):
            MusicTrack(**params)


class TestMusicFilter:
    def test_volume_and_fades(self):
        track = MusicTrack(file="m.mp3", volume=0.3, fade_in=1, fade_out=2)
        assert build_music_filter(track, 1, 10) == (
            "[1:a]volume=0.3,afade=t=in:st=0:d=1,afade=t=out:st=8:d=2[musicout]"
        )

    def test_zero_fades_omitted(self):
        track = MusicTrack(file="m.mp3", volume=0.5)
        assert build_music_filter(track, 1, 10) == "[1:a]volume=0.5[musicout]"

    def test_fade_out_capped_at_duration(self):
        track = MusicTrack(file="m.mp3", fade_out=30)
        assert "afade=t=out:st=0:d=6" in build_music_filter(track, 1, 6)

    def test_fade_out_ends_at_duration(self):
        track = MusicTrack(file="m.mp3", fade_out=1.5)
        assert "afade=t=out:st=5.2:d=1.5" in build_music_filter(track, 1, 6.7)

    def test_start_offset_trims_track_first(self):
        track = MusicTrack(file="m.mp3", volume=1, start_offset=12.25)
        result = build_music_filter(track, 1, 10)
        assert result.startswith("[1:a]atrim=start=12.25,asetpts=PTS-STARTPTS,volume=1")


class TestMixFilter:
    def test_with_source_audio(self):
        assert build_mix_filter(True, 10) == (
            "[0:a][musicout]amix=inputs=2:duration=first:dropout_transition=2[outa]"
        )

    def test_without_source_audio_pads_to_duration(self):
        assert build_mix_filter(False, 6) == (
            "[musicout]atrim=duration=6,apad=whole_dur=6[outa]"
        )
