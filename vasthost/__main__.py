from vasthost.cli import setup

if __name__ == "__main__":
    setup()
