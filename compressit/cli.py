"""
Command Line Interface for Compress-It
Main entry point with argument parsing and command execution
"""

import argparse
import glob
import os
import sys
import signal
import threading
import traceback
from typing import Dict, Any, List, Optional

import yaml
from tqdm import tqdm

from .logger_setup import setup_logging
from .config_manager import ConfigManager
from .engine import CompressionEngine, default_output_path
from .errors import CompressionError, ErrorHandler, InvalidConfiguration
from .models import MB, CompressionResult, ImageFormat, VideoContainer

logger = None  # Will be initialized after logging setup

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


class CompressItCLI:
    def __init__(self):
        self.config: Optional[ConfigManager] = None
        self.engine: Optional[CompressionEngine] = None
        self.active_job = None
        self.shutdown_requested = False
        self.shutdown_lock = threading.Lock()

    def main(self, argv: Optional[List[str]] = None) -> int:
        """Main entry point"""
        try:
            args = self._parse_arguments(argv)

            # Quiet console by default; verbose console with --debug
            global logger
            effective_level = 'DEBUG' if getattr(args, 'debug', False) else args.log_level
            logger = setup_logging(log_level=effective_level, logs_dir=args.logs_dir)

            self._setup_signal_handlers()
            self._initialize_components(args)
            return self._execute_command(args)

        except KeyboardInterrupt:
            if logger:
                logger.info("Operation cancelled by user")
            return EXIT_CANCELLED
        except InvalidConfiguration as e:
            print(f"Invalid settings: {e.message}", file=sys.stderr)
            return EXIT_FAILED
        finally:
            if self.engine is not None:
                self.engine.shutdown(cancel_running=True)

    def _setup_signal_handlers(self):
        """Cancel the live job on the first signal, exit on the second"""

        def signal_handler(signum, frame):
            try:
                signal_name = signal.Signals(signum).name
            except ValueError:
                signal_name = str(signum)

            with self.shutdown_lock:
                if self.shutdown_requested:
                    print(f"\n{signal_name} received again. Exiting immediately...")
                    raise KeyboardInterrupt
                self.shutdown_requested = True

            print(f"\n{signal_name} received. Cancelling...")
            if logger:
                logger.warning(f"{signal_name} received, cancelling active work")
            if self.active_job is not None:
                self.active_job.cancel()
            else:
                raise KeyboardInterrupt

        # Handlers can only be installed from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGINT, signal_handler)
        if hasattr(signal, 'SIGTERM'):
            signal.signal(signal.SIGTERM, signal_handler)

    def _parse_arguments(self, argv: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command line arguments"""
        parser = argparse.ArgumentParser(
            prog='compressit',
            description="Compress-It - Shrink images to a quality level and videos to a target size",
            epilog="Examples:\n"
                   "  %(prog)s image photo.jpg -q 75\n"
                   "  %(prog)s image \"*.png\" -f webp -o compressed/ -j 4\n"
                   "  %(prog)s image banner.png --width 1200 --no-keep-aspect\n"
                   "  %(prog)s video clip.mov -s 16 --quality high -f mp4\n"
                   "  %(prog)s config validate\n",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )

        parser.add_argument('--config-dir', default=None,
                            help='Configuration directory (default: packaged defaults)')
        parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                            default=None, help='Override console logging level (default: WARNING)')
        parser.add_argument('-v', '--debug', action='store_true',
                            help='Enable verbose debug output in console and logs')
        parser.add_argument('--logs-dir', default='logs', help='Directory for log files (default: logs)')
        parser.add_argument('--temp-dir', help='Temporary directory for attempt outputs')
        parser.add_argument('--ffmpeg', dest='ffmpeg_path', help='Path to the ffmpeg binary')
        parser.add_argument('--ffprobe', dest='ffprobe_path', help='Path to the ffprobe binary')

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        image_parser = subparsers.add_parser('image', aliases=['i', 'img'],
                                             help='Compress image file(s) - glob patterns run as a batch')
        image_parser.add_argument('inputs', nargs='+', help='Input image files or glob patterns')
        image_parser.add_argument('-q', '--quality', type=int, metavar='1-100',
                                  help='Compression quality (default from config: 80)')
        image_parser.add_argument('-f', '--format', dest='output_format',
                                  choices=[fmt.value for fmt in ImageFormat], default='original',
                                  help='Output format (default: keep the source format)')
        image_parser.add_argument('--width', dest='resize_width', type=int, help='Maximum output width')
        image_parser.add_argument('--height', dest='resize_height', type=int, help='Maximum output height')
        image_parser.add_argument('--no-keep-aspect', dest='keep_aspect_ratio', action='store_false',
                                  help='Fill each requested side instead of fitting inside the box')
        image_parser.add_argument('-o', '--output-dir', help='Output directory (default: beside the source)')
        image_parser.add_argument('-j', '--jobs', type=int, metavar='N',
                                  help='Concurrent images (default: physical CPU count)')

        video_parser = subparsers.add_parser('video', aliases=['v', 'c', 'compress'],
                                             help='Compress a video to a target size')
        video_parser.add_argument('input', help='Input video file')
        video_parser.add_argument('output', nargs='?', help='Output video file (default: <stem>.<format>)')
        video_parser.add_argument('-s', '--target-size', dest='target_size_mb', type=float, required=True,
                                  metavar='MB', help='Target size in MB (1 MB = 1024 KB)')
        video_parser.add_argument('--quality', choices=['high', 'medium', 'low'], default='medium',
                                  help='Quality tier (default: medium)')
        video_parser.add_argument('-f', '--format', dest='output_format',
                                  choices=[container.value for container in VideoContainer], default='mp4',
                                  help='Output container (default: mp4)')
        video_parser.add_argument('--fallback-duration', dest='fallback_duration_seconds', type=float,
                                  metavar='SECONDS', help='Duration to assume when the source cannot be probed')
        video_parser.add_argument('--no-progress', action='store_true', help='Hide the progress bar')

        config_parser = subparsers.add_parser('config', aliases=['cfg'], help='Configuration management')
        config_subparsers = config_parser.add_subparsers(dest='config_action')
        config_subparsers.add_parser('show', help='Show current configuration')
        config_subparsers.add_parser('validate', help='Validate configuration files')

        args = parser.parse_args(argv)
        if not args.command:
            parser.print_help()
            parser.exit(EXIT_FAILED)
        return args

    def _initialize_components(self, args: argparse.Namespace):
        """Initialize configuration and the engine"""
        self.config = ConfigManager(args.config_dir)
        self.config.update_from_args(self._extract_config_overrides(args))

        if args.command in ('config', 'cfg'):
            return
        if not self.config.validate_config():
            raise InvalidConfiguration("Configuration validation failed; see log for details")

        self.engine = CompressionEngine(
            self.config,
            ffmpeg_path=args.ffmpeg_path,
            ffprobe_path=args.ffprobe_path,
            max_video_jobs=1,
        )

    def _extract_config_overrides(self, args: argparse.Namespace) -> Dict[str, Any]:
        """Extract configuration overrides from CLI arguments"""
        overrides = {}
        if getattr(args, 'temp_dir', None):
            overrides['general.temp_dir'] = args.temp_dir
        if getattr(args, 'ffmpeg_path', None):
            overrides['video_compression.ffmpeg_path'] = args.ffmpeg_path
        if getattr(args, 'ffprobe_path', None):
            overrides['video_compression.ffprobe_path'] = args.ffprobe_path
        if getattr(args, 'jobs', None):
            overrides['image_compression.max_concurrent_jobs'] = args.jobs
        return overrides

    def _execute_command(self, args: argparse.Namespace) -> int:
        """Execute the requested command"""
        command = args.command
        if command in ('i', 'img'):
            command = 'image'
        elif command in ('v', 'c', 'compress'):
            command = 'video'
        elif command == 'cfg':
            command = 'config'

        if command == 'image':
            return self._compress_images(args)
        if command == 'video':
            return self._compress_video(args)
        if command == 'config':
            return self._handle_config_command(args)

        logger.error(f"Unknown command: {command}")
        return EXIT_FAILED

    @staticmethod
    def _is_glob_pattern(path: str) -> bool:
        """Check if a path contains glob pattern characters"""
        return any(char in path for char in ['*', '?', '['])

    def _expand_inputs(self, inputs: List[str]) -> List[str]:
        files: List[str] = []
        for item in inputs:
            if self._is_glob_pattern(item):
                matches = sorted(path for path in glob.glob(item) if os.path.isfile(path))
                if not matches:
                    logger.warning(f"No files match pattern: {item}")
                files.extend(matches)
            else:
                files.append(item)
        return files

    def _compress_images(self, args: argparse.Namespace) -> int:
        files = self._expand_inputs(args.inputs)
        if not files:
            print("No input images found")
            return EXIT_FAILED

        settings = {
            'quality': args.quality,
            'output_format': args.output_format,
            'resize_width': args.resize_width,
            'resize_height': args.resize_height,
            'keep_aspect_ratio': args.keep_aspect_ratio,
        }

        def _report(source_path: str, result: CompressionResult):
            name = os.path.basename(source_path)
            if result.succeeded:
                print(f"  ✅ {name} -> {os.path.basename(result.output_location)}: {result.describe()}")
            else:
                print(f"  ❌ {name}: {result.describe()}")

        print(f"Compressing {len(files)} image(s)...")
        results = self.engine.compress_images(files, settings, output_dir=args.output_dir,
                                              max_workers=args.jobs, on_result=_report)

        successful = [result for result in results if result.succeeded]
        original_total = sum(result.original_size for result in successful)
        compressed_total = sum(result.compressed_size for result in successful)
        if original_total:
            saved = (original_total - compressed_total) / original_total * 100
            print(f"\nDone: {len(successful)}/{len(results)} succeeded, "
                  f"{original_total / MB:.2f}MB -> {compressed_total / MB:.2f}MB ({saved:.1f}% saved)")
        self._print_failures(self.engine.last_batch_errors)
        return EXIT_OK if len(successful) == len(results) else EXIT_FAILED

    @staticmethod
    def _print_failures(error_handler: Optional[ErrorHandler]):
        if error_handler is None:
            return
        for failure in error_handler.get_top_failures():
            print(f"  {failure['count']} x {failure['category']}: {failure['sample_message']}")

    def _compress_video(self, args: argparse.Namespace) -> int:
        output = args.output or default_output_path(args.input, VideoContainer(args.output_format).extension)
        settings = {
            'target_size_mb': args.target_size_mb,
            'quality': args.quality,
            'output_format': args.output_format,
            'output_path': output,
            'fallback_duration_seconds': args.fallback_duration_seconds,
        }

        job = self.engine.compress_video(args.input, settings)
        self.active_job = job
        try:
            if args.no_progress:
                result = job.result()
            else:
                result = self._follow_progress(job)
        finally:
            self.active_job = None

        if result.succeeded:
            if result.attempts == 0:
                print(f"✅ Already under {args.target_size_mb}MB, nothing to do: {result.output_location}")
            else:
                print(f"✅ {os.path.basename(result.output_location)}: {result.describe()} "
                      f"in {result.attempts} attempt(s)")
            return EXIT_OK
        if result.was_cancelled:
            print("🛑 Compression cancelled")
            return EXIT_CANCELLED

        error = ErrorHandler().handle_result(result, args.input, continue_processing=False)
        print(f"❌ {error.get_detailed_description()}")
        return EXIT_FAILED

    @staticmethod
    def _follow_progress(job) -> CompressionResult:
        bar_format = "{l_bar}{bar}| {n:.1f}% {postfix}"
        pbar = None
        current_attempt = 0
        try:
            for event in job.events():
                if event.attempt != current_attempt:
                    if pbar is not None:
                        pbar.close()
                    current_attempt = event.attempt
                    desc = "Compressing" if current_attempt == 1 else "Optimizing further"
                    pbar = tqdm(total=100, desc=desc, unit="%", bar_format=bar_format)
                pbar.n = round(event.fraction * 100, 1)
                if event.throughput_hint:
                    pbar.set_postfix_str(event.throughput_hint, refresh=False)
                pbar.refresh()
        finally:
            if pbar is not None:
                pbar.close()
        return job.result()

    def _handle_config_command(self, args: argparse.Namespace) -> int:
        action = getattr(args, 'config_action', None) or 'show'
        if action == 'validate':
            valid = self.config.validate_config()
            print("✅ Configuration is valid" if valid else "❌ Configuration is invalid (see log)")
            return EXIT_OK if valid else EXIT_FAILED

        print(yaml.safe_dump(self.config.config, sort_keys=False, allow_unicode=True))
        print("Loaded from:")
        for path in self.config.loaded_files:
            print(f"  - {path}")
        return EXIT_OK


def main(argv: Optional[List[str]] = None):
    """Entry point for the CLI application"""
    cli = CompressItCLI()
    try:
        code = cli.main(argv)
    except CompressionError as e:
        print(f"Error: {e.describe()}", file=sys.stderr)
        if logger:
            logger.debug(traceback.format_exc())
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == '__main__':
    main()
