from rewards_tracker.clients.price import PriceClient
from rewards_tracker.clients.chain import ChainObserver
from rewards_tracker.clients.orchestrator import Orchestrator
from rewards_tracker.clients.coingecko import CoinGeckoClient

__all__ = ['PriceClient', 'ChainObserver', 'Orchestrator', 'CoinGeckoClient']
