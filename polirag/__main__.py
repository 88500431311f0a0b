from polirag.cli import run

run()
