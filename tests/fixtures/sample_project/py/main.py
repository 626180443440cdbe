import os

from app.service import handle


def main():
    print(handle(os.getpid()))


if __name__ == "__main__":
    main()
