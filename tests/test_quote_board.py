import unittest

from crytrack.schemas.quote import PriceQuote
from crytrack.services.quote_board import QuoteBoard, QuoteIngestWorker, QuoteThrottle


def _quote(symbol, price, change=None):
    return PriceQuote(symbol=symbol, price=price, change24h=change)


class TestQuoteThrottle(unittest.TestCase):
    def setUp(self):
        self.delivered = []
        self.throttle = QuoteThrottle(self.delivered.append, interval_sec=3.0)

    def test_first_quote_is_emitted_immediately(self):
        self.assertTrue(self.throttle.push(_quote("BTCUSDT", "1"), now=10.0))
        self.assertTrue(self.throttle.push(_quote("ETHUSDT", "2"), now=10.5))

        self.assertEqual([q.price for q in self.delivered], ["1", "2"])

    def test_latest_value_wins_within_window(self):
        self.throttle.push(_quote("BTCUSDT", "100"), now=0.0)
        self.assertFalse(self.throttle.push(_quote("BTCUSDT", "101"), now=0.5))
        self.assertFalse(self.throttle.push(_quote("BTCUSDT", "102"), now=1.0))

        self.assertEqual(self.throttle.flush(now=2.9), 0)
        self.assertEqual(self.throttle.flush(now=3.0), 1)
        self.assertEqual(self.throttle.flush(now=9.0), 0)

        self.assertEqual([q.price for q in self.delivered], ["100", "102"])
        self.assertEqual(self.throttle.coalesced, 1)

    def test_newer_push_after_window_supersedes_pending(self):
        self.throttle.push(_quote("BTCUSDT", "100"), now=0.0)
        self.throttle.push(_quote("BTCUSDT", "101"), now=1.0)
        self.throttle.push(_quote("BTCUSDT", "102"), now=3.5)
        self.throttle.flush(now=10.0)

        self.assertEqual([q.price for q in self.delivered], ["100", "102"])
        self.assertEqual(self.throttle.pending(), {})

    def test_windows_are_per_symbol(self):
        self.throttle.push(_quote("BTCUSDT", "100"), now=0.0)
        self.throttle.push(_quote("BTCUSDT", "101"), now=1.0)
        self.throttle.push(_quote("ETHUSDT", "3000"), now=1.0)

        self.assertEqual([q.symbol for q in self.delivered], ["BTCUSDT", "ETHUSDT"])
        self.assertEqual(list(self.throttle.pending()), ["BTCUSDT"])

    def test_discard_drops_pending_for_deselected_symbols(self):
        self.throttle.push(_quote("BTCUSDT", "100"), now=0.0)
        self.throttle.push(_quote("BTCUSDT", "101"), now=1.0)

        self.throttle.discard(["ETHUSDT"])
        self.throttle.flush(now=10.0)

        self.assertEqual([q.price for q in self.delivered], ["100"])


class TestQuoteBoard(unittest.TestCase):
    def test_reset_seeds_placeholders_and_drops_removed_rows(self):
        board = QuoteBoard()
        board.reset(["BTCUSDT", "ETHUSDT"])
        board.upsert(_quote("BTCUSDT", "51000", 2.0))

        board.reset(["ethusdt", "SOLUSDT"])

        self.assertIsNone(board.get("BTCUSDT"))
        self.assertEqual(board.get("ethusdt").price, "0")
        self.assertIsNone(board.get("SOLUSDT").change24h)
        self.assertFalse(board.upsert(_quote("BTCUSDT", "51001", 2.1)))
        self.assertIsNone(board.get("BTCUSDT"))

    def test_sorted_by_price_and_change(self):
        board = QuoteBoard()
        board.reset(["BTCUSDT", "ETHUSDT", "XRPUSDT"])
        board.upsert(_quote("BTCUSDT", "51000.5", -1.5))
        board.upsert(_quote("ETHUSDT", "3000", None))
        board.upsert(_quote("XRPUSDT", "0.52", 4.0))

        by_price = [q.symbol for q in board.sorted("price")]
        by_change = [q.symbol for q in board.sorted("change24h")]

        self.assertEqual(by_price, ["BTCUSDT", "ETHUSDT", "XRPUSDT"])
        # missing change sorts as zero
        self.assertEqual(by_change, ["XRPUSDT", "ETHUSDT", "BTCUSDT"])

        with self.assertRaises(ValueError):
            board.sorted("volume")


class TestQuoteIngestWorker(unittest.TestCase):
    def test_on_quote_flows_through_throttle_to_board(self):
        now = {"t": 0.0}
        worker = QuoteIngestWorker(QuoteBoard(), throttle_sec=3.0, clock=lambda: now["t"])
        worker.reset_selection(["BTCUSDT"])

        worker.on_quote(_quote("BTCUSDT", "100", 1.0))
        now["t"] = 1.0
        worker.on_quote(_quote("BTCUSDT", "101", 2.0))
        self.assertEqual(worker.board.get("BTCUSDT").price, "100")

        now["t"] = 3.0
        worker.throttle.flush()
        self.assertEqual(worker.board.get("BTCUSDT").price, "101")

        metrics = worker.metrics()
        self.assertEqual(metrics["tracked_symbols"], 1)
        self.assertEqual(metrics["quotes_received"], 2)
        self.assertEqual(metrics["quotes_applied"], 2)
        self.assertEqual(metrics["quotes_pending"], 0)
        self.assertIsInstance(metrics["last_quote_ts"], int)

    def test_quotes_for_deselected_symbols_are_rejected(self):
        worker = QuoteIngestWorker(QuoteBoard(), clock=lambda: 0.0)
        worker.reset_selection(["ETHUSDT"])

        worker.on_quote(_quote("BTCUSDT", "100"))

        self.assertIsNone(worker.board.get("BTCUSDT"))
        self.assertEqual(worker.metrics()["quotes_rejected"], 1)

    def test_pump_start_stop(self):
        worker = QuoteIngestWorker(QuoteBoard(), pump_interval_sec=0.01)
        worker.start()
        self.assertTrue(worker._thread.is_alive())

        worker.stop()
        self.assertFalse(worker._thread.is_alive())


if __name__ == "__main__":
    unittest.main()
