from billing_sync.cli import run

run()
