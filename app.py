from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import flet as ft

from autocut.audio import SpeakerSink
from autocut.config import ConfigStore
from autocut.errors import AutoCutError, ExportCancelled, UnsupportedEnvironment
from autocut.ffmpeg import FFmpegCompositor, FFmpegNotFound, load_material, resolve_ffmpeg_bins
from autocut.filters import FILTER_PRESETS, preset_name
from autocut.media import ImageSurface
from autocut.session import MAX_ZOOM, MIN_ZOOM, EditorSession, format_time
from autocut.shortcuts import (
    ACTION_DELETE,
    ACTION_EXPORT,
    ACTION_IMPORT,
    ACTION_NEW_PROJECT,
    ACTION_REDO,
    ACTION_SHOW_SHORTCUTS,
    ACTION_SPLIT,
    ACTION_STOP,
    ACTION_TOGGLE_PLAY_PAUSE,
    ACTION_UNDO,
    ACTION_ZOOM_IN,
    ACTION_ZOOM_OUT,
    resolve_shortcut_action,
    shortcut_legend,
)

log = logging.getLogger("autocut")

PREVIEW_W = 640
PREVIEW_H = 360
MEDIA_EXTENSIONS = ["mp4", "mov", "mkv", "avi", "webm", "m4v"]


def _fmt_bytes(n: int) -> str:
    try:
        n = int(n)
    except Exception:
        return "-"
    if n <= 0:
        return "-"
    units = ["B", "KB", "MB", "GB", "TB"]
    v = float(n)
    u = 0
    while v >= 1024.0 and u < len(units) - 1:
        v /= 1024.0
        u += 1
    return f"{v:.1f} {units[u]}"


def main(page: ft.Page) -> None:
    cfg = ConfigStore.default()
    logging.basicConfig(level=cfg.log_level())

    page.title = "AutoCut"
    _platform = str(getattr(page, "platform", "") or "").lower()
    is_web = bool(getattr(page, "web", False)) or ("web" in _platform)
    if not is_web:
        page.window.width = 1100
        page.window.height = 760
    page.theme_mode = ft.ThemeMode.DARK
    page.padding = 10

    bins: Optional[tuple[str, str]] = None
    try:
        bins = resolve_ffmpeg_bins(cfg.ffmpeg_dir())
    except FFmpegNotFound as ex:
        log.error("%s", ex)

    def _compositor_factory() -> FFmpegCompositor:
        if bins is None:
            raise FFmpegNotFound("ffmpeg is required for export")
        settings = session.export_settings
        return FFmpegCompositor(bins[0], video_codec=settings.video_codec, container=settings.format)

    surface = ImageSurface(PREVIEW_W, PREVIEW_H)

    speaker: Optional[SpeakerSink] = None
    try:
        speaker = SpeakerSink()
    except UnsupportedEnvironment as ex:
        log.warning("%s", ex)
    export_in_progress = False

    # ---------- helpers ----------
    def snack(msg: str) -> None:
        # SnackBar is a DialogControl in newer Flet versions.
        page.show_dialog(ft.SnackBar(ft.Text(msg)))

    def _safe_update() -> None:
        try:
            page.update()
        except Exception:
            pass

    # ---------- Preview ----------
    preview_image = ft.Image(src=surface.to_png(), width=PREVIEW_W, height=PREVIEW_H, fit=ft.ImageFit.CONTAIN)
    preview_hint = ft.Text("Import a video to start", color=ft.Colors.WHITE54)
    time_label = ft.Text("00:00 / 00:00", size=12, color=ft.Colors.WHITE70)

    def refresh_preview() -> None:
        preview_image.src = surface.to_png()
        time_label.value = f"{format_time(session.current_time)} / {format_time(session.timeline.total_duration())}"
        preview_hint.visible = session.timeline.is_empty()
        playhead.left = session.time_to_x(session.current_time)
        _safe_update()

    def on_time(_t: int) -> None:
        refresh_preview()

    def on_ended() -> None:
        play_btn.icon = ft.Icons.PLAY_ARROW
        refresh_preview()

    def on_error(ex: BaseException) -> None:
        play_btn.icon = ft.Icons.PLAY_ARROW
        snack(f"Playback stopped: {ex}")
        refresh_preview()

    session = EditorSession(
        surface,
        compositor_factory=_compositor_factory,
        audio_sink=speaker,
        tick_interval=cfg.tick_interval_ms() / 1000.0,
        export_settings=cfg.export_settings(),
        on_time=on_time,
        on_ended=on_ended,
        on_error=on_error,
    )

    def on_timeline_empty() -> None:
        preview_hint.visible = True
        update_inspector()

    session.on_empty(on_timeline_empty)

    def on_disconnect(_e=None) -> None:
        if speaker is not None:
            speaker.close()

    page.on_disconnect = on_disconnect

    # ---------- Media Bin ----------
    media_list = ft.ListView(expand=True, spacing=4, auto_scroll=False)

    def refresh_media() -> None:
        media_list.controls.clear()
        for m in session.materials.values():
            meta = m.metadata
            tooltip = f"{m.name}\n{format_time(m.duration)}\n{meta.width}x{meta.height}\n{_fmt_bytes(meta.size)}"
            media_list.controls.append(
                ft.Container(
                    padding=8,
                    border_radius=8,
                    bgcolor=ft.Colors.BLUE_GREY_800,
                    tooltip=tooltip,
                    content=ft.Row(
                        [
                            ft.Icon(ft.Icons.MOVIE),
                            ft.Text(m.name, expand=True, no_wrap=True),
                            ft.Text(format_time(m.duration)),
                            ft.IconButton(
                                ft.Icons.ADD,
                                tooltip="Add to timeline",
                                on_click=lambda _e, mid=m.id: add_to_timeline_click(mid),
                            ),
                        ],
                        tight=True,
                    ),
                )
            )
        _safe_update()

    file_picker = ft.FilePicker()

    # ---------- Timeline ----------
    timeline_info = ft.Text("Timeline: 0 clips", size=12, color=ft.Colors.WHITE70)
    timeline_row = ft.Row(spacing=0)
    playhead = ft.Container(left=0, top=0, width=2, height=64, bgcolor=ft.Colors.RED_400)
    timeline_zoom = ft.Slider(min=MIN_ZOOM, max=MAX_ZOOM, value=session.zoom, divisions=190, width=200)

    def refresh_timeline() -> None:
        timeline_row.controls.clear()
        for s in session.timeline:
            selected = s.id == session.selected_sprite_id
            timeline_row.controls.append(
                ft.Container(
                    width=max(4.0, session.time_to_x(s.duration)),
                    height=64,
                    padding=4,
                    border_radius=6,
                    bgcolor=ft.Colors.AMBER_800 if selected else ft.Colors.BLUE_700,
                    border=ft.border.all(1, ft.Colors.BLACK),
                    tooltip=f"{s.material.name}\n{format_time(s.start_time)} - {format_time(s.end_time)}",
                    on_click=lambda _e, sid=s.id: select_click(sid),
                    content=ft.Text(s.material.name, size=11, no_wrap=True),
                )
            )
        n = len(session.timeline)
        timeline_info.value = f"Timeline: {n} clip{'s' if n != 1 else ''} | {format_time(session.timeline.total_duration())}"
        refresh_preview()

    def on_zoom(_e=None) -> None:
        timeline_zoom.value = session.set_zoom(float(timeline_zoom.value))
        refresh_timeline()

    timeline_zoom.on_change = on_zoom

    def on_timeline_tap_down(e: ft.TapEvent) -> None:
        try:
            x = float(e.local_position.x)
        except Exception:
            x = float(getattr(e, "local_x", 0.0) or 0.0)

        async def _do() -> None:
            await session.seek_to_x(x)
            refresh_preview()

        page.run_task(_do)

    timeline_surface = ft.GestureDetector(
        on_tap_down=on_timeline_tap_down,
        content=ft.Stack([timeline_row, playhead], height=64),
    )

    # ---------- Inspector ----------
    filter_dd = ft.Dropdown(
        width=180,
        dense=True,
        label="Filter",
        value="none",
        options=[ft.dropdown.Option(key=k, text=k.capitalize()) for k in FILTER_PRESETS],
    )
    speed_slider = ft.Slider(min=0.25, max=4.0, value=1.0, divisions=15, round=2, label="{value}x", width=200)
    opacity_slider = ft.Slider(min=0.0, max=1.0, value=1.0, divisions=20, round=2, width=200)
    inspector_title = ft.Text("No clip selected", size=12, color=ft.Colors.WHITE70)

    def update_inspector() -> None:
        s = session.selected_sprite()
        disabled = s is None
        for c in (filter_dd, speed_slider, opacity_slider):
            c.disabled = disabled
        if s is None:
            inspector_title.value = "No clip selected"
        else:
            inspector_title.value = f"{s.material.name} @ {format_time(s.start_time)} ({format_time(s.duration)})"
            name = preset_name(s.filters)
            filter_dd.value = name if name in FILTER_PRESETS else None
            speed_slider.value = s.playback_rate
            opacity_slider.value = s.opacity
        _safe_update()

    def _run_edit(fn, *args) -> None:
        try:
            fn(*args)
        except AutoCutError as ex:
            snack(str(ex))
            return
        refresh_timeline()
        update_inspector()
        _refresh_history_controls()

    def on_filter_change(_e=None) -> None:
        _run_edit(session.apply_filter_preset, str(filter_dd.value or "none"))

    def on_speed_change(_e=None) -> None:
        _run_edit(session.set_playback_rate, float(speed_slider.value))

    def on_opacity_change(_e=None) -> None:
        _run_edit(session.set_opacity, float(opacity_slider.value))

    filter_dd.on_change = on_filter_change
    speed_slider.on_change_end = on_speed_change
    opacity_slider.on_change_end = on_opacity_change

    # ---------- Actions ----------
    undo_btn = ft.IconButton(ft.Icons.UNDO, tooltip="Undo (Ctrl+Z)")
    redo_btn = ft.IconButton(ft.Icons.REDO, tooltip="Redo (Ctrl+Y)")
    play_btn = ft.IconButton(ft.Icons.PLAY_ARROW, tooltip="Play/Pause (Space)")

    def _refresh_history_controls() -> None:
        undo_btn.disabled = not session.history.can_undo()
        redo_btn.disabled = not session.history.can_redo()
        label = session.history.peek_undo_label()
        undo_btn.tooltip = f"Undo {label} (Ctrl+Z)" if label else "Undo (Ctrl+Z)"
        _safe_update()

    def select_click(sprite_id: str) -> None:
        session.select(sprite_id)
        refresh_timeline()
        update_inspector()

    def add_to_timeline_click(material_id: str) -> None:
        _run_edit(session.append_to_timeline, material_id)

    def split_click(_e=None) -> None:
        _run_edit(session.split_selected)

    def delete_click(_e=None) -> None:
        _run_edit(session.delete_selected)

    def undo_click(_e=None) -> None:
        label = session.undo()
        if label:
            snack(f"Undo: {label}")
        refresh_timeline()
        update_inspector()
        _refresh_history_controls()

    def redo_click(_e=None) -> None:
        label = session.redo()
        if label:
            snack(f"Redo: {label}")
        refresh_timeline()
        update_inspector()
        _refresh_history_controls()

    def play_click(_e=None) -> None:
        async def _do() -> None:
            try:
                playing = await session.toggle_play_pause()
            except AutoCutError as ex:
                snack(str(ex))
                return
            play_btn.icon = ft.Icons.PAUSE if playing else ft.Icons.PLAY_ARROW
            refresh_preview()

        page.run_task(_do)

    def stop_click(_e=None) -> None:
        async def _do() -> None:
            try:
                await session.stop()
            except AutoCutError as ex:
                snack(str(ex))
            play_btn.icon = ft.Icons.PLAY_ARROW
            refresh_preview()

        page.run_task(_do)

    def new_project_click(_e=None) -> None:
        session.new_project()
        refresh_media()
        refresh_timeline()
        update_inspector()
        _refresh_history_controls()
        snack("New project")

    undo_btn.on_click = undo_click
    redo_btn.on_click = redo_click
    play_btn.on_click = play_click

    def import_click(_e=None) -> None:
        async def _pick() -> None:
            picked = await file_picker.pick_files(
                allow_multiple=True,
                file_type=ft.FilePickerFileType.CUSTOM,
                allowed_extensions=MEDIA_EXTENSIONS,
            )
            if not picked:
                return
            if bins is None:
                snack("ffmpeg/ffprobe not found; cannot import media")
                return
            ffmpeg, ffprobe = bins

            for f in picked:
                if not f.path:
                    continue
                try:
                    # ffprobe blocks; keep it off the event loop.
                    material = await asyncio.to_thread(load_material, ffmpeg, ffprobe, f.path)
                except Exception as ex:
                    log.exception("probe failed: %s", ex)
                    snack(f"Failed to load: {Path(f.path).name}")
                    continue
                placed = session.add_material(material)
                if placed is not None:
                    await session.seek(0)

            refresh_media()
            refresh_timeline()
            update_inspector()
            _refresh_history_controls()

        page.run_task(_pick)

    def export_click(_e=None) -> None:
        nonlocal export_in_progress
        if export_in_progress:
            snack("Export is already running")
            return
        if session.timeline.is_empty():
            snack("Timeline is empty")
            return

        async def _save_and_export() -> None:
            nonlocal export_in_progress
            fmt = session.export_settings.format
            out_path = await file_picker.save_file(
                file_name=f"output.{fmt}",
                initial_directory=cfg.last_export_dir() or None,
                file_type=ft.FilePickerFileType.CUSTOM,
                allowed_extensions=[fmt],
            )
            if not out_path:
                return
            out_path = str(Path(out_path).with_suffix(f".{fmt}"))
            cfg.set_last_export_dir(out_path)

            progress_label = ft.Text("Preparing export...", size=12)
            progress_bar = ft.ProgressBar(value=0.0, width=420)
            cancel_requested = False
            cancel_btn = ft.TextButton("Cancel Export")

            def _request_cancel_export(_e=None) -> None:
                nonlocal cancel_requested
                if cancel_requested:
                    return
                cancel_requested = True
                cancel_btn.disabled = True
                progress_label.value = "Cancelling export..."
                _safe_update()

            def _on_progress(pct: float) -> None:
                progress_bar.value = pct / 100.0
                progress_label.value = f"Encoding... {int(pct)}%"
                _safe_update()

            cancel_btn.on_click = _request_cancel_export
            export_dialog = ft.AlertDialog(
                modal=True,
                title=ft.Text("Exporting"),
                content=ft.Column([progress_label, progress_bar], tight=True, spacing=8, width=460),
                actions=[cancel_btn],
            )
            page.show_dialog(export_dialog)
            export_in_progress = True
            play_btn.icon = ft.Icons.PLAY_ARROW
            try:
                result = await session.export(on_progress=_on_progress, should_cancel=lambda: bool(cancel_requested))
                await asyncio.to_thread(Path(out_path).write_bytes, result.data)
                msg = f"Export done: {Path(out_path).name} ({_fmt_bytes(result.size)})"
            except ExportCancelled:
                msg = "Export cancelled"
            except (AutoCutError, OSError) as ex:
                log.exception("export failed: %s", ex)
                msg = f"Export failed: {ex}"
            finally:
                export_in_progress = False
                try:
                    page.pop_dialog()
                except Exception:
                    pass
            snack(msg)

        page.run_task(_save_and_export)

    def _show_shortcuts_dialog(_e=None) -> None:
        rows = []
        for keys, desc in shortcut_legend():
            rows.append(
                ft.Row(
                    [
                        ft.Container(width=210, content=ft.Text(keys, weight=ft.FontWeight.BOLD, size=12)),
                        ft.Text(desc, size=12, color=ft.Colors.WHITE70),
                    ],
                    alignment=ft.MainAxisAlignment.START,
                    vertical_alignment=ft.CrossAxisAlignment.START,
                )
            )

        dlg = ft.AlertDialog(
            modal=True,
            title=ft.Text("Keyboard Shortcuts"),
            content=ft.Container(width=560, height=360, content=ft.ListView(rows, spacing=6)),
            actions=[ft.TextButton("Close", on_click=lambda _e: page.pop_dialog())],
        )
        page.show_dialog(dlg)

    def on_keyboard(e: ft.KeyboardEvent) -> None:
        ev_type = str(getattr(e, "type", "") or "").strip().lower().replace("_", "")
        if ev_type and ev_type != "keydown":
            return

        action = resolve_shortcut_action(
            key=str(getattr(e, "key", "") or ""),
            ctrl=bool(getattr(e, "ctrl", False)),
            shift=bool(getattr(e, "shift", False)),
            alt=bool(getattr(e, "alt", False)),
            meta=bool(getattr(e, "meta", False)),
        )
        if not action:
            return

        if action == ACTION_UNDO:
            undo_click()
        elif action == ACTION_REDO:
            redo_click()
        elif action == ACTION_DELETE:
            delete_click()
        elif action == ACTION_SPLIT:
            split_click()
        elif action == ACTION_EXPORT:
            export_click()
        elif action == ACTION_IMPORT:
            import_click()
        elif action == ACTION_NEW_PROJECT:
            new_project_click()
        elif action == ACTION_ZOOM_IN:
            timeline_zoom.value = session.zoom_in()
            refresh_timeline()
        elif action == ACTION_ZOOM_OUT:
            timeline_zoom.value = session.zoom_out()
            refresh_timeline()
        elif action == ACTION_STOP:
            stop_click()
        elif action == ACTION_TOGGLE_PLAY_PAUSE:
            play_click()
        elif action == ACTION_SHOW_SHORTCUTS:
            _show_shortcuts_dialog()

    page.on_keyboard_event = on_keyboard

    # ---------- Layout ----------
    toolbar = ft.Row(
        [
            ft.IconButton(ft.Icons.NOTE_ADD, tooltip="New project (Ctrl+N)", on_click=new_project_click),
            ft.IconButton(ft.Icons.FILE_OPEN, tooltip="Import (Ctrl+I)", on_click=import_click),
            ft.IconButton(ft.Icons.MOVIE_CREATION, tooltip="Export (Ctrl+E)", on_click=export_click),
            ft.VerticalDivider(width=1),
            undo_btn,
            redo_btn,
            ft.VerticalDivider(width=1),
            play_btn,
            ft.IconButton(ft.Icons.STOP, tooltip="Stop (Home)", on_click=stop_click),
            ft.IconButton(ft.Icons.CONTENT_CUT, tooltip="Split (S)", on_click=split_click),
            ft.IconButton(ft.Icons.DELETE, tooltip="Delete (Del)", on_click=delete_click),
            ft.IconButton(ft.Icons.KEYBOARD, tooltip="Shortcuts (F1)", on_click=_show_shortcuts_dialog),
            ft.Container(expand=True),
            time_label,
        ],
        spacing=4,
    )

    preview_host = ft.Container(
        expand=True,
        border_radius=10,
        bgcolor=ft.Colors.BLACK,
        # Some Flet versions don't expose `ft.alignment.*`; Alignment(x, y) is stable.
        alignment=ft.Alignment(0, 0),
        content=ft.Stack([preview_image, ft.Container(alignment=ft.Alignment(0, 0), content=preview_hint)]),
    )

    inspector = ft.Container(
        width=260,
        padding=10,
        border_radius=10,
        bgcolor=ft.Colors.BLUE_GREY_900,
        content=ft.Column(
            [
                ft.Text("Inspector", weight=ft.FontWeight.BOLD),
                inspector_title,
                filter_dd,
                ft.Text("Speed", size=12),
                speed_slider,
                ft.Text("Opacity", size=12),
                opacity_slider,
            ],
            spacing=6,
        ),
    )

    media_panel = ft.Container(
        width=260,
        padding=10,
        border_radius=10,
        bgcolor=ft.Colors.BLUE_GREY_900,
        content=ft.Column([ft.Text("Media", weight=ft.FontWeight.BOLD), media_list], expand=True),
    )

    timeline_panel = ft.Container(
        padding=10,
        border_radius=10,
        bgcolor=ft.Colors.BLUE_GREY_900,
        content=ft.Column(
            [
                ft.Row([timeline_info, ft.Container(expand=True), ft.Text("Zoom", size=12), timeline_zoom]),
                ft.Row([timeline_surface], scroll=ft.ScrollMode.AUTO),
            ],
            spacing=6,
        ),
    )

    page.add(
        toolbar,
        ft.Row([media_panel, preview_host, inspector], expand=True),
        timeline_panel,
    )

    if bins is None:
        snack("ffmpeg/ffprobe not found; import and export are disabled")
    elif speaker is None:
        snack("No audio output device; preview is silent")
    refresh_timeline()
    update_inspector()
    _refresh_history_controls()


if __name__ == "__main__":
    ft.app(target=main)
