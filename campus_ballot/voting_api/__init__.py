"""HTTP API for the campus ballot: FastAPI app, settings and storage backends."""
