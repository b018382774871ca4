"""DNS proxy building blocks: blocking and caching resolvers, query logging and Redis synchronisation."""

__version__ = "0.1.0"