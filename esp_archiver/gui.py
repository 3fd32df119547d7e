import sys
import threading
import os
import platform
import distro

from PyQt5.QtWidgets import (QApplication, QMainWindow, QWidget, QVBoxLayout,
                             QHBoxLayout, QPushButton, QLabel, QComboBox,
                             QFileDialog, QTextEdit, QGroupBox, QGridLayout,
                             QProgressBar, QMessageBox)
from PyQt5.QtGui import QTextCursor, QPalette, QColor
from PyQt5.QtCore import pyqtSignal, QObject

from esp_archiver.__main__ import default_regions
from esp_archiver.archive import ArchiveWriter, load_archive
from esp_archiver.archiver import FlashArchiver, SessionConfig, pending_regions
from esp_archiver.common import Esp_archiverError
from esp_archiver.const import __version__
from esp_archiver.helpers import list_serial_ports
from esp_archiver.transport import EsptoolTransport

CHIPS = ['auto', 'esp32', 'esp32s2', 'esp32s3', 'esp32c2', 'esp32c3', 'esp32c6']


class RedirectText(QObject):
    text_written = pyqtSignal(str)

    def __init__(self, text_edit):
        super().__init__()
        self._out = text_edit
        self.text_written.connect(self._append_text)

    def write(self, string):
        self.text_written.emit(string)

    def flush(self):
        pass

    def isatty(self):
        return False

    def _append_text(self, text):
        cursor = self._out.textCursor()
        self._out.moveCursor(QTextCursor.End)
        self._out.insertPlainText(text)
        self._out.setTextCursor(cursor)


class ArchiverSignals(QObject):
    progress = pyqtSignal(int, str)
    finished = pyqtSignal(bool)


class ArchiverThread(threading.Thread):
    def __init__(self, command, port, chip, archive_path, signals, resume=False):
        threading.Thread.__init__(self)
        self.daemon = True
        self._command = command
        self._archive_path = archive_path
        self._resume = resume
        self._signals = signals
        config = SessionConfig(port=port, chip=chip, allow_overlap=True)
        self._archiver = FlashArchiver(EsptoolTransport(config.baud), config, self._on_progress)

    def cancel(self):
        self._archiver.cancel()

    def _on_progress(self, event):
        percent = 100 * event.bytes_transferred // max(event.bytes_total, 1)
        self._signals.progress.emit(percent, event.label)

    def run(self):
        ok = False
        try:
            if self._command == "backup":
                with ArchiveWriter(self._archive_path, resume=self._resume) as writer:
                    regions = pending_regions(default_regions(), writer.archive)
                    if len(writer):
                        print(f"Resuming, {len(writer)} region(s) already archived.")
                    if regions:
                        with self._archiver.connect() as device:
                            self._archiver.backup(regions, writer, device)
                print(f"Done! Backup saved to '{self._archive_path}'.")
            else:
                archive = load_archive(self._archive_path)
                with self._archiver.connect() as device:
                    self._archiver.restore(archive, device)
                print("Done! Restore is complete.")
            ok = True
        except Esp_archiverError as e:
            print(f"Error: {e}")
        except Exception as e:
            print("Unexpected error: {}".format(e))
            raise
        finally:
            self._signals.finished.emit(ok)


class MainWindow(QMainWindow):
    def __init__(self):
        super().__init__()

        self._archive = None
        self._port = None
        self._chip = CHIPS[0]
        self._worker = None
        self._signals = ArchiverSignals()
        self._signals.progress.connect(self.update_progress)
        self._signals.finished.connect(self.operation_finished)

        self.init_ui()
        sys.stdout = RedirectText(self.console)  # Redirect stdout to console

    def init_ui(self):
        self.setWindowTitle(f"ESP-Archiver {__version__}")
        self.setGeometry(100, 100, 800, 600)

        central_widget = QWidget()
        self.setCentralWidget(central_widget)

        vbox = QVBoxLayout()

        port_group_box = QGroupBox("Device")
        port_layout = QGridLayout()
        port_label = QLabel("Select Port:")
        self.port_combobox = QComboBox()
        self.reload_ports()
        self.port_combobox.currentIndexChanged.connect(self.select_port)
        reload_button = QPushButton("Reload")
        reload_button.clicked.connect(self.reload_ports)
        chip_label = QLabel("Chip:")
        self.chip_combobox = QComboBox()
        self.chip_combobox.addItems(CHIPS)
        self.chip_combobox.currentIndexChanged.connect(self.select_chip)
        port_layout.addWidget(port_label, 0, 0)
        port_layout.addWidget(self.port_combobox, 0, 1)
        port_layout.addWidget(reload_button, 0, 2)
        port_layout.addWidget(chip_label, 1, 0)
        port_layout.addWidget(self.chip_combobox, 1, 1)
        port_group_box.setLayout(port_layout)

        archive_group_box = QGroupBox("Archive")
        archive_layout = QGridLayout()
        archive_label = QLabel("Archive File:")
        self.archive_button = QPushButton("Browse")
        self.archive_button.clicked.connect(self.pick_file)
        archive_layout.addWidget(archive_label, 0, 0)
        archive_layout.addWidget(self.archive_button, 0, 1)
        archive_group_box.setLayout(archive_layout)

        actions_group_box = QGroupBox("Actions")
        actions_layout = QHBoxLayout()
        self.backup_button = QPushButton("Backup Flash")
        self.backup_button.clicked.connect(self.backup_flash)
        self.restore_button = QPushButton("Restore Flash")
        self.restore_button.clicked.connect(self.restore_flash)
        self.cancel_button = QPushButton("Cancel")
        self.cancel_button.setEnabled(False)
        self.cancel_button.clicked.connect(self.cancel)
        actions_layout.addWidget(self.backup_button)
        actions_layout.addWidget(self.restore_button)
        actions_layout.addWidget(self.cancel_button)
        actions_group_box.setLayout(actions_layout)

        self.progress_bar = QProgressBar()
        self.progress_bar.setRange(0, 100)
        self.progress_bar.setFormat("%p%")

        console_group_box = QGroupBox("Console")
        console_layout = QVBoxLayout()
        self.console = QTextEdit()
        self.console.setReadOnly(True)
        console_layout.addWidget(self.console)
        console_group_box.setLayout(console_layout)

        vbox.addWidget(port_group_box)
        vbox.addWidget(archive_group_box)
        vbox.addWidget(actions_group_box)
        vbox.addWidget(self.progress_bar)
        vbox.addWidget(console_group_box)

        central_widget.setLayout(vbox)

    def reload_ports(self):
        self.port_combobox.clear()
        ports = [port for port, _ in list_serial_ports()]
        if ports:
            self.port_combobox.addItems(ports)
            self._port = ports[0]
        else:
            self.port_combobox.addItem("")
            self._port = None

    def select_port(self, index):
        self._port = self.port_combobox.itemText(index) or None

    def select_chip(self, index):
        self._chip = self.chip_combobox.itemText(index)

    def pick_file(self):
        options = QFileDialog.Options()
        options |= QFileDialog.DontConfirmOverwrite
        file_name, _ = QFileDialog.getSaveFileName(self, "Select Archive File", "", "Flash Archives (*.esparc);;All Files (*)", options=options)
        if file_name:
            self._archive = file_name
            self.archive_button.setText(file_name)

    def start(self, command, resume=False):
        self.console.clear()
        if not (self._archive and self._port) or self._worker is not None:
            return
        self.progress_bar.setValue(0)
        self.backup_button.setEnabled(False)
        self.restore_button.setEnabled(False)
        self.cancel_button.setEnabled(True)
        self._worker = ArchiverThread(command, self._port, self._chip, self._archive, self._signals, resume)
        self._worker.start()

    def backup_flash(self):
        resume = False
        if self._archive and os.path.exists(self._archive):
            answer = QMessageBox.question(
                self, "Archive exists",
                f"'{self._archive}' already exists.\n"
                "Yes resumes the backup and keeps its complete regions, No overwrites it.",
                QMessageBox.Yes | QMessageBox.No | QMessageBox.Cancel,
                QMessageBox.Yes)
            if answer == QMessageBox.Cancel:
                return
            resume = answer == QMessageBox.Yes
        self.start("backup", resume)

    def restore_flash(self):
        self.start("restore")

    def cancel(self):
        if self._worker is not None:
            print("Cancelling after the current region...")
            self._worker.cancel()

    def update_progress(self, percent, label):
        self.progress_bar.setValue(percent)
        self.progress_bar.setFormat(f"{label}: %p%")

    def operation_finished(self, ok):
        self._worker = None
        self.backup_button.setEnabled(True)
        self.restore_button.setEnabled(True)
        self.cancel_button.setEnabled(False)
        if ok:
            self.progress_bar.setValue(100)


def main():

    os_name = platform.system()
    if os_name == 'Darwin':
        os.environ['QT_QPA_PLATFORM'] = 'cocoa'
    elif os_name == 'Linux':
        distro_name = distro.id().lower()
        if 'ubuntu' in distro_name or 'debian' in distro_name:
            os.environ['QT_QPA_PLATFORM'] = 'wayland'
        else:
            os.environ['QT_QPA_PLATFORM'] = 'xcb'
    elif os_name == 'Windows':
        os.environ['QT_QPA_PLATFORM'] = 'windows'
    else:
        os.environ['QT_QPA_PLATFORM'] = 'offscreen'

    app = QApplication(sys.argv)

    app.setStyle("Fusion")
    palette = QPalette()
    palette.setColor(QPalette.Window, QColor(53, 53, 53))
    palette.setColor(QPalette.WindowText, QColor(255, 255, 255))
    palette.setColor(QPalette.Base, QColor(35, 35, 35))
    palette.setColor(QPalette.AlternateBase, QColor(53, 53, 53))
    palette.setColor(QPalette.Text, QColor(255, 255, 255))
    palette.setColor(QPalette.Button, QColor(53, 53, 53))
    palette.setColor(QPalette.ButtonText, QColor(255, 255, 255))
    palette.setColor(QPalette.Highlight, QColor(42, 130, 218))
    palette.setColor(QPalette.HighlightedText, QColor(0, 0, 0))
    app.setPalette(palette)

    main_window = MainWindow()
    main_window.show()
    sys.exit(app.exec_())


if __name__ == "__main__":
    main()
