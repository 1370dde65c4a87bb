"""
Tests for voice playback adapters
"""
import sys
from unittest.mock import MagicMock, patch

from galvn.engine.adapters.audio import NullAudio, PygameAudio


class TestNullAudio:

    def test_remembers_last_clip(self):
        audio = NullAudio()
        assert audio.play_voice(b"clip")
        assert audio.last_clip == b"clip"
        assert audio.played == 1
        audio.stop_voice()
        assert audio.last_clip is None


class TestPygameAudio:
    """Test PygameAudio against a mocked mixer."""

    def fake_pygame(self):
        fake = MagicMock()
        fake.mixer.get_init.return_value = True
        return fake

    def test_empty_clip_ignored(self):
        audio = PygameAudio()
        assert not audio.play_voice(b"")
        assert not audio.is_voice_playing()

    def test_plays_on_dedicated_channel(self):
        fake = self.fake_pygame()
        with patch.dict(sys.modules, {"pygame": fake}):
            audio = PygameAudio(volume=1.5, channel_id=3)
            assert audio.play_voice(b"RIFF....WAVE")

        fake.mixer.Channel.assert_called_once_with(3)
        sound = fake.mixer.Sound.return_value
        sound.set_volume.assert_called_once_with(1.0)
        fake.mixer.Channel.return_value.play.assert_called_once_with(sound)

    def test_mixer_failure_is_not_fatal(self):
        fake = self.fake_pygame()
        fake.mixer.get_init.return_value = False
        fake.mixer.init.side_effect = RuntimeError("no audio device")
        with patch.dict(sys.modules, {"pygame": fake}):
            audio = PygameAudio()
            assert not audio.play_voice(b"RIFF")

    def test_decode_failure(self):
        fake = self.fake_pygame()
        fake.mixer.Sound.side_effect = ValueError("bad clip")
        with patch.dict(sys.modules, {"pygame": fake}):
            audio = PygameAudio()
            assert not audio.play_voice(b"garbage")
            audio.stop_voice()
