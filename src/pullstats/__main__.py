from pullstats.cli import app

app(prog_name="pullstats")
