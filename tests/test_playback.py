import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from airwave.audio import AudioChunk, Source
from airwave.playback import PlaybackEngine, PlaybackState
from airwave.playlist import Playlist, Track

from fakes import FakeFetcher, FakeProcess, ManualClock, settle


def _seek(spawn_call):
    argv = spawn_call.args
    return argv[argv.index("-ss") + 1]


class PlaybackEngineTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.cache = Path(self._tmp.name)
        self.playlist = Playlist([Track("one", "http://x/one.m4a"), Track("two", "http://x/two.m4a")])
        self.fetcher = FakeFetcher(self.cache)
        self.chunks = []
        self.clock = ManualClock()
        self.allowed = True

    def tearDown(self):
        self._tmp.cleanup()

    def make_engine(self, **kw):
        opts = dict(restart_delay=0, fetch_backoff=0, error_backoff=0)
        opts.update(kw)
        return PlaybackEngine(
            self.playlist,
            self.fetcher,
            sink=self.chunks.append,
            restart_allowed=lambda: self.allowed,
            clock=self.clock,
            **opts,
        )

    async def test_start_fetches_and_launches_decoder_from_zero(self):
        proc = FakeProcess()
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)) as spawn:
            engine = self.make_engine()
            await engine.start()

            self.assertEqual(engine.state, PlaybackState.PLAYING)
            self.assertEqual(self.fetcher.fetched, [self.playlist.tracks[0]])
            argv = spawn.call_args.args
            self.assertEqual(_seek(spawn.call_args), "0.000")
            # seek must be applied to the input, before it is opened
            self.assertLess(argv.index("-ss"), argv.index("-i"))
            self.assertIn("-re", argv)
            self.assertEqual(argv[argv.index("-f") + 1], "f32le")

            proc.feed(b"abcd")
            await settle()
            self.assertEqual(self.chunks, [AudioChunk(b"abcd", Source.AUTODJ)])
            await engine.stop()

    async def test_second_start_while_playing_is_a_noop(self):
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=FakeProcess())) as spawn:
            engine = self.make_engine()
            await engine.start()
            await engine.start()
            self.assertEqual(spawn.call_count, 1)
            await engine.stop()

    async def test_start_waits_for_killed_decoder_to_confirm_exit(self):
        class StubbornProcess(FakeProcess):
            def kill(self):
                self.killed = True

        first, second = StubbornProcess(), FakeProcess()
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=[first, second])) as spawn:
            engine = self.make_engine()
            await engine.start()

            pausing = asyncio.create_task(engine.pause())
            await settle()
            self.assertEqual(engine.state, PlaybackState.PAUSED)
            self.assertTrue(first.killed)

            await engine.start()
            self.assertEqual(spawn.call_count, 1)

            first.exit(-9)
            await pausing
            await engine.start()
            self.assertEqual(spawn.call_count, 2)
            self.assertEqual(engine.state, PlaybackState.PLAYING)
            await engine.stop()

    async def test_pause_then_start_resumes_at_elapsed_offset(self):
        procs = [FakeProcess(), FakeProcess()]
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=procs)) as spawn:
            engine = self.make_engine()
            await engine.start()
            self.clock.advance(42.5)
            await engine.pause()

            self.assertTrue(procs[0].killed)
            self.assertEqual(engine.state, PlaybackState.PAUSED)
            self.assertAlmostEqual(engine.session.offset, 42.5)
            self.assertTrue(engine.session.path.exists())

            await engine.start()
            self.assertEqual(_seek(spawn.call_args), "42.500")
            # the cached file is reused, not fetched again
            self.assertEqual(len(self.fetcher.fetched), 1)

            self.clock.advance(10)
            await engine.pause()
            self.assertAlmostEqual(engine.session.offset, 52.5)
            await engine.stop()

    async def test_pause_while_idle_keeps_last_offset(self):
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=FakeProcess())):
            engine = self.make_engine()
            await engine.pause()
            self.assertEqual(engine.state, PlaybackState.IDLE)
            self.assertIsNone(engine.session)

            await engine.start()
            self.clock.advance(7)
            await engine.pause()
            await engine.pause()
            self.assertAlmostEqual(engine.session.offset, 7.0)
            self.assertEqual(engine.state, PlaybackState.PAUSED)
            await engine.stop()

    async def test_natural_end_deletes_cache_and_plays_next_track(self):
        procs = [FakeProcess(), FakeProcess()]
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=procs)) as spawn:
            engine = self.make_engine()
            await engine.start()
            first_file = engine.session.path
            self.clock.advance(300)

            procs[0].exit(0)
            await settle()

            self.assertFalse(first_file.exists())
            self.assertEqual(engine.state, PlaybackState.PLAYING)
            self.assertEqual(spawn.call_count, 2)
            self.assertEqual(_seek(spawn.call_args), "0.000")
            self.assertEqual(self.fetcher.fetched, self.playlist.tracks)
            self.assertEqual(engine.session.track.title, "two")
            await engine.stop()

    async def test_natural_end_while_live_does_not_restart(self):
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=[FakeProcess()])) as spawn:
            engine = self.make_engine()
            await engine.start()
            proc = engine._proc
            self.allowed = False

            proc.exit(0)
            await settle()

            self.assertEqual(spawn.call_count, 1)
            self.assertEqual(engine.state, PlaybackState.IDLE)
            self.assertIsNone(engine.session)

    async def test_pause_during_debounce_suppresses_restart(self):
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=[FakeProcess()])) as spawn:
            engine = self.make_engine(restart_delay=0.02)
            await engine.start()
            engine._proc.exit(0)
            await settle()
            await engine.pause()
            await asyncio.sleep(0.05)
            self.assertEqual(spawn.call_count, 1)
            self.assertEqual(engine.state, PlaybackState.IDLE)

    async def test_decoder_error_retries_same_track_from_zero(self):
        procs = [FakeProcess(), FakeProcess()]
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(side_effect=procs)) as spawn:
            engine = self.make_engine()
            await engine.start()
            cached = engine.session.path
            self.clock.advance(30)

            procs[0].exit(1)
            await settle()

            self.assertEqual(spawn.call_count, 2)
            self.assertEqual(_seek(spawn.call_args), "0.000")
            self.assertTrue(cached.exists())
            self.assertEqual(engine.session.track.title, "one")
            self.assertEqual(len(self.fetcher.fetched), 1)
            await engine.stop()

    async def test_fetch_failure_is_retried(self):
        self.fetcher.failures = 2
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=FakeProcess())) as spawn:
            engine = self.make_engine()
            await engine.start()
            await settle()
            self.assertEqual(engine.state, PlaybackState.PLAYING)
            self.assertEqual(spawn.call_count, 1)
            self.assertEqual(self.fetcher.fetched, [self.playlist.tracks[0]])
            await engine.stop()

    async def test_pause_during_fetch_parks_session(self):
        release = asyncio.Event()
        fetcher = self.fetcher

        class SlowFetcher:
            async def fetch(self, track):
                await release.wait()
                return await fetcher.fetch(track)

        self.fetcher = SlowFetcher()
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=FakeProcess())) as spawn:
            engine = self.make_engine()
            starting = asyncio.create_task(engine.start())
            await settle()
            self.assertEqual(engine.state, PlaybackState.FETCHING)

            await engine.pause()
            release.set()
            await starting

            self.assertEqual(engine.state, PlaybackState.PAUSED)
            self.assertEqual(spawn.call_count, 0)
            self.assertEqual(engine.session.offset, 0.0)

            await engine.start()
            self.assertEqual(spawn.call_count, 1)
            self.assertEqual(_seek(spawn.call_args), "0.000")
            await engine.stop()

    async def test_start_during_fetch_overrides_earlier_pause(self):
        release = asyncio.Event()
        fetcher = self.fetcher

        class SlowFetcher:
            async def fetch(self, track):
                await release.wait()
                return await fetcher.fetch(track)

        self.fetcher = SlowFetcher()
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=FakeProcess())) as spawn:
            engine = self.make_engine()
            starting = asyncio.create_task(engine.start())
            await settle()
            await engine.pause()
            await engine.start()
            release.set()
            await starting

            self.assertEqual(engine.state, PlaybackState.PLAYING)
            self.assertEqual(spawn.call_count, 1)
            await engine.stop()

    async def _gated_spawn(self, procs):
        release = asyncio.Event()
        queue = list(procs)

        async def spawn(*args, **kwargs):
            await release.wait()
            return queue.pop(0)

        return release, AsyncMock(side_effect=spawn)

    async def test_pause_while_decoder_spawns_kills_it_and_keeps_offset(self):
        first, second, third = FakeProcess(), FakeProcess(), FakeProcess()
        release, spawn = await self._gated_spawn([first, second, third])
        release.set()
        with patch("asyncio.create_subprocess_exec", new=spawn):
            engine = self.make_engine()
            await engine.start()
            self.clock.advance(12)
            await engine.pause()

            release.clear()
            resuming = asyncio.create_task(engine.start())
            await settle()
            self.assertEqual(spawn.call_count, 2)

            await engine.pause()
            release.set()
            await resuming

            self.assertTrue(second.killed)
            self.assertEqual(engine.state, PlaybackState.PAUSED)
            self.assertIsNone(engine._proc)
            self.assertAlmostEqual(engine.session.offset, 12.0)

            await engine.start()
            self.assertEqual(_seek(spawn.call_args), "12.000")
            self.assertEqual(engine.state, PlaybackState.PLAYING)
            await engine.stop()

    async def test_start_while_decoder_spawns_is_a_noop(self):
        release, spawn = await self._gated_spawn([FakeProcess(), FakeProcess()])
        with patch("asyncio.create_subprocess_exec", new=spawn):
            engine = self.make_engine()
            starting = asyncio.create_task(engine.start())
            await settle()
            await engine.pause()
            await engine.start()
            release.set()
            await starting

            self.assertEqual(spawn.call_count, 1)
            self.assertEqual(engine.state, PlaybackState.PLAYING)
            await engine.stop()

    async def test_stop_while_decoder_spawns_leaves_engine_idle(self):
        proc = FakeProcess()
        release, spawn = await self._gated_spawn([proc])
        with patch("asyncio.create_subprocess_exec", new=spawn):
            engine = self.make_engine()
            starting = asyncio.create_task(engine.start())
            await settle()
            await engine.stop()
            release.set()
            await starting

            self.assertTrue(proc.killed)
            self.assertEqual(engine.state, PlaybackState.IDLE)
            self.assertIsNone(engine.session)

    async def test_reader_crash_is_logged(self):
        def broken_sink(chunk):
            raise RuntimeError("sink exploded")

        proc = FakeProcess()
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)):
            engine = PlaybackEngine(self.playlist, self.fetcher, sink=broken_sink, clock=self.clock)
            await engine.start()
            with self.assertLogs("airwave.playback", level="ERROR") as logs:
                proc.feed(b"abcdefgh")
                await settle()
            self.assertIn("crashed", logs.output[0])
            await engine.stop()

    async def test_stop_removes_cached_file(self):
        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=FakeProcess())):
            engine = self.make_engine()
            await engine.start()
            cached = engine.session.path
            await engine.stop()
            self.assertFalse(cached.exists())
            self.assertIsNone(engine.session)
            self.assertEqual(engine.state, PlaybackState.IDLE)

    async def test_empty_playlist_stays_idle(self):
        self.playlist = Playlist([])
        with patch("asyncio.create_subprocess_exec", new=AsyncMock()) as spawn:
            engine = self.make_engine()
            await engine.start()
            self.assertEqual(engine.state, PlaybackState.IDLE)
            spawn.assert_not_called()


if __name__ == '__main__':
    unittest.main()
