"""External service adapters: storage backends and the HTTP fetcher."""
