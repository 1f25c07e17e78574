"""
Market Maker with orchestration logic.

Wires feeds, pricers and connections together for one run mode:

    bebop    spot feed + model pricer + RFQ client + pricing stream
    deribit  Deribit ticker feed + exchange pricer + RFQ client + pricing stream
    relay    taker pricing relay + local WebSocket distribution server
    direct   spot feed + model pricer + HTTP quote API + WebSocket price stream
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

from config import Settings, ZERO_ADDRESS
from deribit_feed import DeribitFeed
from deribit_pricer import DeribitPricer
from http_api import QuoteServer
from interfaces import IOptionDiscovery, IPricer, ISpotPriceProvider, IQuoteSigner
from market_data import SpotFeed
from models import DeribitPrice, OrderNotification, SpreadConfig, StartupError
from price_feed_server import OptionPriceServer
from option_metadata import FileOptionDiscovery, to_option_params
from pricing_engine import ModelPricer
from pricing_stream import PricingStream
from relay import PricingRelay
from relay_server import PricingServer, make_token_filter
from rfq_client import BebopRFQClient
from rfq_manager import RFQDecisionEngine
from signing import QuoteSigner
from websocket_client import ConnectFactory

logger = logging.getLogger(__name__)

MODES = ("bebop", "deribit", "relay", "direct")
STATS_INTERVAL = 30  # seconds


# ============================================================================
# Option Loading
# ============================================================================

async def load_options(settings: Settings, pricer: IPricer,
                       discovery: Optional[IOptionDiscovery] = None) -> int:
    """Register every discovered option with the pricer. Returns the count."""
    discovery = discovery or FileOptionDiscovery(settings.chain_id, settings.metadata_dir)
    metadata = await discovery.fetch_all()

    for option in metadata.values():
        pricer.register_option(
            to_option_params(option, settings.underlying, settings.option_decimals)
        )

    logger.info(f"Registered {len(metadata)} options for chain {settings.chain_id}")
    return len(metadata)


# ============================================================================
# Main Market Maker
# ============================================================================

class MarketMaker:
    """
    Process orchestration for a single run mode.

    Components are stopped in reverse start order on shutdown.
    """

    def __init__(self,
                 settings: Settings,
                 mode: str = "bebop",
                 discovery: Optional[IOptionDiscovery] = None,
                 spot_providers: Optional[List[ISpotPriceProvider]] = None,
                 connect_factory: Optional[ConnectFactory] = None):
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}")

        self.settings = settings
        self.mode = mode
        self.discovery = discovery or FileOptionDiscovery(settings.chain_id, settings.metadata_dir)
        self.spot_providers = spot_providers
        self.connect_factory = connect_factory

        self.pricer: Optional[IPricer] = None
        self.spot_feed: Optional[SpotFeed] = None
        self.deribit_feed: Optional[DeribitFeed] = None
        self.rfq_client: Optional[BebopRFQClient] = None
        self.pricing_stream: Optional[PricingStream] = None
        self.relay: Optional[PricingRelay] = None
        self.pricing_server: Optional[PricingServer] = None
        self.quote_server: Optional[QuoteServer] = None
        self.price_server: Optional[OptionPriceServer] = None

        self.components: list = []
        self._shutdown = asyncio.Event()
        self._stats_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Shared building blocks
    # ------------------------------------------------------------------

    def build_decision_engine(self) -> RFQDecisionEngine:
        if not self.settings.maker_address:
            logger.warning("MAKER_ADDRESS not set - every RFQ will be declined")
        return RFQDecisionEngine(
            maker_address=self.settings.maker_address,
            quote_validity=self.settings.quote_validity,
        )

    def build_signer(self) -> Optional[IQuoteSigner]:
        if not self.settings.private_key:
            return None
        signer = QuoteSigner(self.settings.private_key)
        logger.info(f"Signing quotes as {signer.address}")
        return signer

    def build_model_pricer(self, spot_feed: SpotFeed) -> ModelPricer:
        s = self.settings
        return ModelPricer(
            spot_feed=spot_feed,
            decision_engine=self.build_decision_engine(),
            default_iv=s.default_iv,
            risk_free_rate=s.risk_free_rate,
            spread_config=SpreadConfig(
                bid_spread=s.bid_spread,
                ask_spread=s.ask_spread,
                min_spread=s.min_spread,
            ),
        )

    async def start_spot_feed(self) -> SpotFeed:
        s = self.settings
        spot_feed = SpotFeed(stale_after=s.spot_stale_seconds, providers=self.spot_providers)
        spot_feed.start()
        await spot_feed.open()
        self.components.append(spot_feed)

        spot = await spot_feed.get_price(s.underlying)
        if spot is None:
            logger.warning(f"No initial {s.underlying} spot price, pricing waits for the poller")
        else:
            logger.info(f"{s.underlying} spot: ${spot:.2f}")

        spot_feed.start_polling([s.underlying], s.spot_poll_interval)
        self.spot_feed = spot_feed
        return spot_feed

    async def start_bebop_connections(self, pricer: IPricer) -> None:
        """RFQ client and pricing stream on the configured chain"""
        s = self.settings

        self.rfq_client = BebopRFQClient(
            chain=s.chain,
            chain_id=s.chain_id,
            marketmaker=s.bebop_marketmaker,
            authorization=s.bebop_authorization,
            pricer=pricer,
            signer=self.build_signer(),
            heartbeat_interval=s.heartbeat_interval,
            connect_factory=self.connect_factory,
        )
        self.rfq_client.on_order(self._log_order)
        await self.rfq_client.start()
        self.components.append(self.rfq_client)

        self.pricing_stream = PricingStream(
            chain=s.chain,
            chain_id=s.chain_id,
            marketmaker=s.bebop_marketmaker,
            authorization=s.bebop_authorization,
            maker_address=s.maker_address or ZERO_ADDRESS,
            quote_token_address=s.quote_token_address,
            pricer=pricer,
            interval=s.pricing_interval,
            connect_factory=self.connect_factory,
        )
        await self.pricing_stream.start()
        self.components.append(self.pricing_stream)

    def _log_order(self, order: OrderNotification) -> None:
        logger.info(f"Order {order.rfq_id}: {order.status.value} ({order.order_hash[:10]})")

    # ------------------------------------------------------------------
    # Run modes
    # ------------------------------------------------------------------

    async def start_bebop(self) -> None:
        spot_feed = await self.start_spot_feed()
        self.pricer = self.build_model_pricer(spot_feed)

        count = await load_options(self.settings, self.pricer, self.discovery)
        if count == 0:
            raise StartupError("No options registered - nothing to quote")

        await self.start_bebop_connections(self.pricer)

    async def start_deribit(self) -> None:
        s = self.settings

        feed = DeribitFeed(
            underlying=s.underlying,
            testnet=s.deribit_testnet,
            connect_factory=self.connect_factory,
        )
        self.deribit_feed = feed
        self.components.append(feed)

        instruments = await feed.fetch_instruments()
        if not instruments:
            raise StartupError(f"No Deribit {s.underlying} option instruments available")

        pricer = DeribitPricer(
            feed,
            decision_engine=self.build_decision_engine(),
            spread_markup=s.deribit_spread_markup,
        )
        self.pricer = pricer

        await load_options(s, pricer, self.discovery)
        matched = len(pricer.option_to_deribit)
        logger.info(f"Matched {matched} options to Deribit instruments "
                    f"({len(pricer.unmatched)} unmatched)")
        if matched == 0:
            raise StartupError("No options matched a Deribit instrument")

        await feed.connect()
        await feed.subscribe(pricer.get_deribit_instruments())
        feed.on_price_update(self._log_deribit_price)

        if await feed.wait_for_prices(5.0):
            spot = feed.get_spot_price()
            if spot is not None:
                logger.info(f"Deribit index price: ${spot:.2f}")

        await self.start_bebop_connections(pricer)

    def _log_deribit_price(self, instrument: str, price: DeribitPrice) -> None:
        logger.debug(f"{instrument}: bid={price.best_bid_price} ask={price.best_ask_price} "
                     f"mark={price.mark_price} index={price.index_price}")

    async def start_relay(self) -> None:
        s = self.settings

        if s.relay_tracked_tokens:
            is_tracked = make_token_filter({0: s.relay_tracked_tokens})
            tracked_count = len(s.relay_tracked_tokens)
        else:
            metadata = await self.discovery.fetch_all()
            is_tracked = make_token_filter({s.chain_id: list(metadata.keys())})
            tracked_count = len(metadata)
        if tracked_count == 0:
            logger.warning("No tracked tokens - relay will forward nothing")
        else:
            logger.info(f"Relay tracking {tracked_count} tokens")

        self.relay = PricingRelay(
            chains=s.relay_chains,
            name=s.bebop_marketmaker,
            authorization=s.bebop_authorization,
            connect_factory=self.connect_factory,
        )
        await self.relay.start()
        self.components.append(self.relay)

        self.pricing_server = PricingServer(self.relay, is_tracked, port=s.relay_ws_port)
        await self.pricing_server.start()
        self.components.append(self.pricing_server)

    async def start_direct(self) -> None:
        spot_feed = await self.start_spot_feed()
        self.pricer = self.build_model_pricer(spot_feed)

        count = await load_options(self.settings, self.pricer, self.discovery)
        if count == 0:
            raise StartupError("No options registered - nothing to quote")

        self.quote_server = QuoteServer(
            self.pricer,
            maker_address=self.settings.maker_address or ZERO_ADDRESS,
            chain_id=self.settings.chain_id,
            port=self.settings.http_port,
        )
        await self.quote_server.start()
        self.components.append(self.quote_server)

        self.price_server = OptionPriceServer(
            self.pricer,
            port=self.settings.ws_port,
            update_interval=self.settings.ws_update_interval,
        )
        await self.price_server.start()
        self.components.append(self.price_server)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info(f"Starting market maker in {self.mode.upper()} mode "
                    f"(chain {self.settings.chain_id})")
        starters = {
            "bebop": self.start_bebop,
            "deribit": self.start_deribit,
            "relay": self.start_relay,
            "direct": self.start_direct,
        }
        await starters[self.mode]()

    async def stop(self) -> None:
        logger.info("Shutting down...")
        if self._stats_task:
            self._stats_task.cancel()
            await asyncio.gather(self._stats_task, return_exceptions=True)
            self._stats_task = None

        while self.components:
            component = self.components.pop()
            try:
                if isinstance(component, DeribitFeed):
                    await component.disconnect()
                else:
                    await component.stop()
            except Exception as e:
                logger.error(f"Error stopping {type(component).__name__}: {e}")

        logger.info("Market Maker stopped")

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    async def run(self) -> None:
        """Start the mode, then block until a shutdown signal"""
        self.install_signal_handlers()
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise

        self._stats_task = asyncio.create_task(self._stats_loop())
        logger.info("=" * 50)
        logger.info(f"Market Maker Started ({self.mode})")
        logger.info("=" * 50)

        await self._shutdown.wait()
        await self.stop()

    async def _stats_loop(self):
        while True:
            try:
                await asyncio.sleep(STATS_INTERVAL)
                self._log_statistics()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in stats loop: {e}")

    def get_stats(self) -> Dict[str, dict]:
        stats: Dict[str, dict] = {}
        if isinstance(self.pricer, ModelPricer):
            stats["pricer"] = self.pricer.get_summary()
        if self.rfq_client:
            stats["rfq"] = self.rfq_client.get_stats()
        if self.pricing_stream:
            stats["pricing_stream"] = self.pricing_stream.get_stats()
        if self.relay:
            stats["relay"] = dict(self.relay.stats)
        return stats

    def _log_statistics(self):
        logger.info("-" * 50)
        for name, values in self.get_stats().items():
            logger.info(f"{name}: {values}")
        if self.pricing_server:
            logger.info(self.pricing_server.format_stats())
        logger.info("-" * 50)


# ============================================================================
# Main Entry Point
# ============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Options market maker")
    parser.add_argument("--mode", choices=MODES, default="bebop",
                        help="run mode (default: bebop)")
    return parser.parse_args(argv)


async def run(mode: str, settings: Optional[Settings] = None) -> None:
    market_maker = MarketMaker(settings or Settings.from_env(), mode)
    await market_maker.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        asyncio.run(run(args.mode))
    except StartupError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
