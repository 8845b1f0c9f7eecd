"""
led-photographer: photograph and process every LED on the attached controllers.

If you need to restart data gathering, this tool will avoid retaking any
photos that it's already taken, and only redo processing that's missing.
"""
import os
import sys
import signal
import asyncio
import logging
import argparse

from led_mapper.fadecandy import DEFAULT_URL, STRIPS_PER_DEVICE
from led_mapper.photographer import Photographer, PhotographerOptions
from led_mapper.scheduler import SchedulerContext
from led_mapper.store import PhotoStore

EXIT_INTERRUPTED = 130


def setup_logging(debug_mode):
    """Set up logging configuration."""
    level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(level=level,
                        format='[%(asctime)s.%(msecs)03d] [%(levelname)s] %(filename)s:%(lineno)d %(message)s',
                        datefmt='%H:%M:%S')


def _install_interrupt_handler(task):
    """
    First Ctrl-C cancels the run, which checkpoints on its way out. A second
    one exits immediately, for when the camera is stuck in a capture.
    """
    loop = asyncio.get_running_loop()
    interrupts = []

    def on_interrupt():
        interrupts.append(1)
        if len(interrupts) == 1:
            logging.warning("Interrupted, saving progress (Ctrl-C again to force quit)")
            task.cancel()
        else:
            logging.error("Forced exit")
            os._exit(EXIT_INTERRUPTED)  # pylint: disable=protected-access

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform; KeyboardInterrupt still works
        pass


async def photograph(options):
    """Run one photography session described by options."""
    store = PhotoStore.load(options.data)
    with SchedulerContext(options.concurrency) as ctx:
        photographer = Photographer(options, store, ctx)
        _install_interrupt_handler(asyncio.current_task())
        await photographer.run()


def build_parser():
    parser = argparse.ArgumentParser(
        description="Photograph each LED and generate thumbnails and lightmaps for mapping")

    parser.add_argument("-d", "--data", required=True,
                       help="Data directory for photos and JSON")
    parser.add_argument("-p", "--processonly", action="store_true",
                       help="Don't connect to Fadecandy or the camera, just process existing photos")
    parser.add_argument("-c", "--concurrency", type=int, default=os.cpu_count() or 1,
                       help="How many processing tasks to run in parallel")
    parser.add_argument("--thumbscale", type=int, default=3,
                       help="Log2 of amount to downscale thumbnails by")
    parser.add_argument("--noisethreshold", type=float, default=10,
                       help="Below this peakDiff, assume an LED is missing")
    parser.add_argument("--maxgap", type=int, default=2,
                       help="If this many LEDs in a row are missing, assume the strip has ended")
    parser.add_argument("--darkinterval", type=float, default=60,
                       help="Dark frames must be at least this recent, in seconds")
    parser.add_argument("--denoise", type=int, default=100,
                       help="Wavelet denoising threshold for lightmaps")
    parser.add_argument("--blacklevel", type=int, default=0,
                       help="Darkness level to subtract from lightmaps")
    parser.add_argument("--strips", type=int, default=STRIPS_PER_DEVICE,
                       help="Number of strips to photograph on each controller")
    parser.add_argument("--fcserver", default=DEFAULT_URL,
                       help="Fadecandy server URL")
    parser.add_argument("--debug", action="store_true",
                       help="Enable debug logging")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)

    options = PhotographerOptions(
        data=args.data,
        processonly=args.processonly,
        concurrency=args.concurrency,
        thumbscale=args.thumbscale,
        noisethreshold=args.noisethreshold,
        maxgap=args.maxgap,
        darkinterval=args.darkinterval,
        denoise=args.denoise,
        blacklevel=args.blacklevel,
        strips=args.strips,
        fcserver=args.fcserver,
    )
    logging.debug("Options: %s", options)

    try:
        asyncio.run(photograph(options))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logging.info("Interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e: # pylint: disable=broad-exception-caught
        logging.exception("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
