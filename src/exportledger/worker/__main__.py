from exportledger.worker.main import run

run()
