"""
CLI entry point, when used as a module: `python -m crontrigger`.

Useful for debugging in the IDEs (use the start-mode "Module", module "crontrigger").
"""
from crontrigger import cli

if __name__ == '__main__':
    cli.main()
